from __future__ import annotations

from fastapi import APIRouter, Depends

from research_copilot.api.deps import store as store_dependency
from research_copilot.errors import NotFoundError
from research_copilot.models.research import ResearchBrief
from research_copilot.models.schemas import (
    ChatPlanRequest,
    ChatSendRequest,
    ChatSendResponse,
    ResearchStartRequest,
    ResearchStartResponse,
)
from research_copilot.services.brief import build_brief
from research_copilot.services.chat import respond
from research_copilot.services.dispatcher import dispatch_research
from research_copilot.services.store import Store

router = APIRouter(prefix="/api", tags=["chat"])


async def _history(store: Store, session_id: str) -> list[dict]:
    if await store.get_session(session_id) is None:
        raise NotFoundError(f"Session not found: {session_id}")
    return await store.get_messages(session_id)


@router.post("/chat-send", response_model=ChatSendResponse)
async def chat_send(request: ChatSendRequest, store: Store = Depends(store_dependency)):
    """Answer ``message`` in the context of the session's transcript. Nothing is persisted."""
    history = await _history(store, request.session_id)
    reply = await respond(history, request.message)
    return ChatSendResponse(content=reply.content, tokens=reply.tokens, model=reply.model)


@router.post("/chat-plan", response_model=ResearchBrief)
async def chat_plan(request: ChatPlanRequest, store: Store = Depends(store_dependency)):
    history = await _history(store, request.session_id)
    return await build_brief(history)


@router.post("/research-start", response_model=ResearchStartResponse)
async def research_start(request: ResearchStartRequest, store: Store = Depends(store_dependency)):
    result = await dispatch_research(request.session_id, request.brief, store=store)
    return ResearchStartResponse(run_id=result.run_id, sse_url=result.sse_url, status=result.status.value)
