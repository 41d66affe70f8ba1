from __future__ import annotations

from contextlib import AsyncExitStack

import httpx
from fastapi import APIRouter
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from research_copilot.errors import ProviderError
from research_copilot.services import logger as log_service
from research_copilot.services import streaming
from research_copilot.services.parallel import get_parallel_client

router = APIRouter(prefix="/api", tags=["stream"])

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


@router.get("/research-stream/{run_id}")
async def research_stream(run_id: str, last_event_id: str | None = None):
    """Relay the provider's event stream for ``run_id`` byte for byte."""
    client = get_parallel_client()
    stack = AsyncExitStack()
    # Opened here so an upstream refusal becomes a 502 instead of an empty stream.
    upstream = await stack.enter_async_context(client.open_event_stream(run_id, last_event_id))

    async def relay():
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except (httpx.HTTPError, ProviderError) as e:
            log_service.log_event(
                event_type="relay_error",
                message="Upstream event stream failed mid-stream",
                run_id=run_id,
                error=str(e),
            )
            yield streaming.error("Upstream event stream failed", run_id=run_id).format().encode("utf-8")
        finally:
            await stack.aclose()

    return StreamingResponse(
        relay(), media_type="text/event-stream", headers=SSE_HEADERS, background=BackgroundTask(stack.aclose)
    )
