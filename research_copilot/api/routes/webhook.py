from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from research_copilot.api.deps import store as store_dependency
from research_copilot.models.schemas import WebhookResponse
from research_copilot.services.reconciler import handle_webhook
from research_copilot.services.store import Store

router = APIRouter(prefix="/api", tags=["webhook"])


@router.post("/parallel-webhook", response_model=WebhookResponse)
async def parallel_webhook(request: Request, store: Store = Depends(store_dependency)):
    """Task status callback from the research provider.

    The raw body is read before parsing because the signature covers its exact bytes.
    """
    raw_body = await request.body()
    outcome = await handle_webhook(raw_body, request.headers, store=store)
    return WebhookResponse(
        success=True,
        duplicate=outcome.duplicate,
        run_id=outcome.run_id,
        status=outcome.status.value if outcome.status else None,
        ignored=outcome.ignored,
    )
