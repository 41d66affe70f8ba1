from __future__ import annotations

from research_copilot.config import settings
from research_copilot.errors import CopilotError, NotFoundError, ProviderError
from research_copilot.models.research import DispatchResult, MessageRole, ResearchBrief, TaskStatus
from research_copilot.services import logger as log_service
from research_copilot.services.parallel import OUTPUT_SCHEMA, get_parallel_client
from research_copilot.services.prompt_store import render_prompt
from research_copilot.services.store import Store, get_store


async def dispatch_research(
    session_id: str, brief: ResearchBrief, *, store: Store | None = None
) -> DispatchResult:
    """Start a provider research run for ``brief`` and record it on the session.

    The task run row is written before any message so a webhook that arrives
    early always finds it.
    """
    store = store or get_store()
    if await store.get_session(session_id) is None:
        raise NotFoundError(f"Session not found: {session_id}")

    client = get_parallel_client()
    try:
        run_id = await client.create_task_run(
            brief.objective,
            processor=settings.parallel_processor,
            webhook_url=settings.webhook_url,
            output_schema=OUTPUT_SCHEMA if settings.parallel_output_schema_enabled else None,
        )
    except ProviderError as e:
        log_service.log_event(
            event_type="dispatch_failed",
            message="Research task could not be created",
            session_id=session_id,
            cause=e.cause,
            upstream_status=e.upstream_status,
            error=e.message,
        )
        await store.create_message(
            session_id,
            MessageRole.SYSTEM,
            render_prompt("messages.dispatch_failed", reason=e.message),
            {"error": True, "retryable": True},
        )
        raise

    await store.create_task_run(session_id, run_id, brief_text=brief.summary)
    sse_url = settings.stream_url(run_id)
    log_service.log_event(
        event_type="research_dispatched",
        message="Research task created",
        session_id=session_id,
        run_id=run_id,
        processor=settings.parallel_processor,
    )

    try:
        await store.create_message(
            session_id,
            MessageRole.RESEARCH,
            render_prompt(
                "messages.research_started",
                objective=brief.objective,
                timebox_minutes=f"{brief.timebox_minutes:g}",
                run_id=run_id,
            ),
            {"run_id": run_id, "status": "started", "sse_url": sse_url},
        )
    except CopilotError as e:
        # The run exists upstream; the webhook will still reconcile it.
        log_service.log_event(
            event_type="research_message_failed",
            message="Could not record research started message",
            session_id=session_id,
            run_id=run_id,
            error=str(e),
        )

    return DispatchResult(run_id=run_id, sse_url=sse_url, status=TaskStatus.QUEUED)
