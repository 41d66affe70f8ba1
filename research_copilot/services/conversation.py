"""User message handling: classify, then chat or plan-and-dispatch research.

Every message gets a terminal answer in the transcript: an assistant reply,
a research started notice, or a retryable system error.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from research_copilot.errors import CopilotError, NotFoundError, ProviderError
from research_copilot.models.research import MessageRole
from research_copilot.services import logger as log_service
from research_copilot.services.brief import build_brief
from research_copilot.services.chat import respond
from research_copilot.services.classifier import needs_research
from research_copilot.services.dispatcher import dispatch_research
from research_copilot.services.prompt_store import render_prompt
from research_copilot.services.store import Store, get_store


@dataclass(slots=True)
class ConversationResult:
    route: str  # chat | research
    messages: list[dict[str, Any]] = field(default_factory=list)
    run_id: str | None = None


async def handle_user_message(
    session_id: str, content: str, *, store: Store | None = None
) -> ConversationResult:
    store = store or get_store()
    if await store.get_session(session_id) is None:
        raise NotFoundError(f"Session not found: {session_id}")

    history = await store.get_messages(session_id)
    user_message = await store.create_message(session_id, MessageRole.USER, content)
    await store.touch_session(session_id)

    route = "research" if needs_research(content) else "chat"
    log_service.log_event(
        event_type="message_routed",
        message="User message classified",
        session_id=session_id,
        route=route,
        length=len(content),
    )

    run_id: str | None = None
    if route == "research":
        run_id = await _start_research(store, session_id, [*history, user_message])
    else:
        await _chat(store, session_id, history, content)

    await store.touch_session(session_id)
    transcript = await store.get_messages(session_id)
    ids = [m["id"] for m in transcript]
    new_messages = transcript[ids.index(user_message["id"]):] if user_message["id"] in ids else [user_message]
    return ConversationResult(route=route, messages=new_messages, run_id=run_id)


async def _chat(store: Store, session_id: str, history: list[dict[str, Any]], content: str) -> None:
    try:
        reply = await respond(history, content)
    except CopilotError as e:
        await _processing_error(store, session_id, e, stage="chat")
        return
    await store.create_message(
        session_id,
        MessageRole.ASSISTANT,
        reply.content,
        {"tokens": reply.tokens, "model": reply.model},
    )


async def _start_research(store: Store, session_id: str, history: list[dict[str, Any]]) -> str | None:
    try:
        brief = await build_brief(history)
    except CopilotError as e:
        await _processing_error(store, session_id, e, stage="brief")
        return None

    try:
        result = await dispatch_research(session_id, brief, store=store)
    except ProviderError:
        # The dispatcher already recorded a retryable system message.
        return None
    except CopilotError as e:
        await _processing_error(store, session_id, e, stage="dispatch")
        return None
    return result.run_id


async def _processing_error(store: Store, session_id: str, error: CopilotError, *, stage: str) -> None:
    log_service.log_event(
        event_type="message_failed",
        message="User message could not be answered",
        session_id=session_id,
        stage=stage,
        error_type=error.kind,
        error=error.message,
    )
    await store.create_message(
        session_id,
        MessageRole.SYSTEM,
        render_prompt("messages.processing_error", reason=error.message),
        {"error": True, "retryable": True},
    )
