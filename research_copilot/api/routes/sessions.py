from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends

from research_copilot.api.deps import current_user_id
from research_copilot.api.deps import store as store_dependency
from research_copilot.config import settings
from research_copilot.errors import NotFoundError, SessionLimitReached, ValidationError
from research_copilot.models.research import SessionStatus
from research_copilot.models.schemas import (
    MessageCreateRequest,
    MessageResponse,
    MessageUpdateRequest,
    SendMessageResponse,
    SessionCreateRequest,
    SessionDetailResponse,
    SessionResponse,
    SessionUpdateRequest,
)
from research_copilot.services import logger as log_service
from research_copilot.services.conversation import handle_user_message
from research_copilot.services.store import Store

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


async def _require_session(store: Store, session_id: UUID) -> dict:
    session = await store.get_session(str(session_id))
    if not session:
        raise NotFoundError("Session not found")
    return session


@router.get("", response_model=list[SessionResponse])
async def list_sessions(
    user_id: str | None = Depends(current_user_id), store: Store = Depends(store_dependency)
):
    """List active sessions, most recent activity first."""
    return await store.list_sessions(user_id=user_id, status=SessionStatus.ACTIVE)


@router.post("", response_model=SessionResponse, status_code=201)
async def create_session(
    request: SessionCreateRequest,
    user_id: str | None = Depends(current_user_id),
    store: Store = Depends(store_dependency),
):
    limit = settings.max_active_sessions
    if limit and await store.count_active_sessions(user_id) >= limit:
        raise SessionLimitReached(
            f"Maximum of {limit} active sessions reached. Archive a session to start a new one."
        )
    session = await store.create_session(request.title, user_id=user_id)
    log_service.log_event(
        event_type="session_created", message="Session created", session_id=session["id"], user_id=user_id
    )
    return session


@router.get("/{session_id}", response_model=SessionDetailResponse)
async def get_session(session_id: UUID, store: Store = Depends(store_dependency)):
    """Get a session with all its messages."""
    session = await _require_session(store, session_id)
    messages = await store.get_messages(str(session_id))
    return SessionDetailResponse(
        session=SessionResponse(**session),
        messages=[MessageResponse(**m) for m in messages],
    )


@router.patch("/{session_id}", response_model=SessionResponse)
async def update_session(
    session_id: UUID, request: SessionUpdateRequest, store: Store = Depends(store_dependency)
):
    await _require_session(store, session_id)
    fields = request.model_dump(exclude_none=True)
    if "status" in fields:
        try:
            fields["status"] = SessionStatus(fields["status"]).value
        except ValueError as e:
            raise ValidationError(f"Unknown session status: {fields['status']}") from e
    return await store.update_session(str(session_id), **fields)


@router.post("/{session_id}/archive", response_model=SessionResponse)
async def archive_session(session_id: UUID, store: Store = Depends(store_dependency)):
    await _require_session(store, session_id)
    return await store.update_session(str(session_id), status=SessionStatus.ARCHIVED.value)


@router.delete("/{session_id}")
async def delete_session(session_id: UUID, store: Store = Depends(store_dependency)):
    """Delete a session with its messages and task runs."""
    await _require_session(store, session_id)
    await store.delete_session(str(session_id))
    return {"status": "deleted"}


@router.get("/{session_id}/messages", response_model=list[MessageResponse])
async def list_messages(session_id: UUID, store: Store = Depends(store_dependency)):
    await _require_session(store, session_id)
    return await store.get_messages(str(session_id))


@router.post("/{session_id}/messages", response_model=SendMessageResponse)
async def send_message(
    session_id: UUID, request: MessageCreateRequest, store: Store = Depends(store_dependency)
):
    """Send a user message through classification and chat or research."""
    result = await handle_user_message(str(session_id), request.content, store=store)
    return SendMessageResponse(
        route=result.route,
        messages=[MessageResponse(**m) for m in result.messages],
        run_id=result.run_id,
    )


@router.patch("/{session_id}/messages/{message_id}", response_model=MessageResponse)
async def update_message(
    session_id: UUID,
    message_id: UUID,
    request: MessageUpdateRequest,
    store: Store = Depends(store_dependency),
):
    """Correct a message's content in place. Order and metadata are unchanged."""
    await _require_session(store, session_id)
    messages = await store.get_messages(str(session_id))
    if not any(m["id"] == str(message_id) for m in messages):
        raise NotFoundError("Message not found")
    message = await store.update_message(str(message_id), request.content)
    if message is None:
        raise NotFoundError("Message not found")
    log_service.log_event(
        event_type="message_updated",
        message="Message content corrected",
        session_id=str(session_id),
        message_id=str(message_id),
    )
    return message
