from __future__ import annotations

import json

from fastapi import APIRouter, Depends
from sse_starlette.sse import EventSourceResponse

from research_copilot.api.deps import store as store_dependency
from research_copilot.errors import NotFoundError
from research_copilot.models.schemas import SweepResponse
from research_copilot.services import logger as log_service
from research_copilot.services import streaming
from research_copilot.services.parallel import get_parallel_client
from research_copilot.services.progress import ProgressTracker
from research_copilot.services.reconciler import sweep_stale_runs
from research_copilot.services.store import Store

router = APIRouter(prefix="/api/research", tags=["research"])


@router.post("/sweep", response_model=SweepResponse)
async def sweep(store: Store = Depends(store_dependency)):
    """Expire runs that never reported a terminal status."""
    return SweepResponse(expired=await sweep_stale_runs(store=store))


@router.get("/{run_id}/progress")
async def research_progress(run_id: str, store: Store = Depends(store_dependency)):
    """SSE endpoint with synthetic progress, live updates and the terminal outcome."""
    if await store.get_task_run(run_id) is None:
        raise NotFoundError(f"Task run not found: {run_id}")
    tracker = ProgressTracker(run_id, store=store, client=get_parallel_client())

    async def event_generator():
        try:
            async for event in tracker.events():
                yield {"event": event.event.value, "data": json.dumps(event.data)}
        except Exception as e:
            log_service.log_event(
                event_type="stream_error",
                message="Unhandled error in progress stream",
                error=str(e),
                run_id=run_id,
            )
            error_event = streaming.error("Progress stream failed unexpectedly.", run_id=run_id)
            yield {"event": error_event.event.value, "data": json.dumps(error_event.data)}

    return EventSourceResponse(event_generator())
