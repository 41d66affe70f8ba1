"""Task status reconciliation.

Every completion signal (webhook, provider event stream, datastore change
feed, stale-run sweep) ends in ``reconcile()``. The outcome message for a run
is written at most once: ``claim_reconciliation`` is a compare-and-set on
``task_runs.reconciled_at`` taken before any result fetch or message insert,
and released again if anything after it fails so a redelivery can retry.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from research_copilot.config import settings
from research_copilot.errors import (
    CopilotError,
    MissingRunId,
    NotFoundError,
    ProviderError,
    SignatureError,
    ValidationError,
)
from research_copilot.models.research import MessageRole, ResearchOutput, TaskStatus
from research_copilot.services import logger as log_service
from research_copilot.services.parallel import get_parallel_client
from research_copilot.services.prompt_store import render_prompt
from research_copilot.services.store import Store, get_store

_STATUS_ALIASES = {"cancelled": TaskStatus.CANCELED}

_TERMINAL_PHRASES = {
    TaskStatus.FAILED: "failed",
    TaskStatus.CANCELED: "was canceled",
    TaskStatus.EXPIRED: "received no completion signal in time",
}


@dataclass(slots=True)
class ReconcileOutcome:
    run_id: str
    status: TaskStatus | None
    duplicate: bool = False
    message_id: str | None = None
    ignored: bool = False


@dataclass(slots=True)
class WebhookEvent:
    run_id: str
    status: TaskStatus | None  # None for provider statuses that need no action
    raw_status: Any = None


# --- Webhook parsing and verification ---


def compute_signature(secret: str, webhook_id: str, timestamp: str, raw_body: bytes) -> str:
    signed = f"{webhook_id}.{timestamp}.".encode("utf-8") + raw_body
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(
    secret: str, raw_body: bytes, *, webhook_id: str, timestamp: str, signature_header: str
) -> bool:
    expected = compute_signature(secret, webhook_id, timestamp, raw_body)
    for candidate in signature_header.split():
        if candidate.startswith("v1,"):
            candidate = candidate[3:]
        if hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8")):
            return True
    return False


def parse_status(value: Any) -> TaskStatus:
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _STATUS_ALIASES:
            return _STATUS_ALIASES[normalized]
        try:
            return TaskStatus(normalized)
        except ValueError:
            pass
    raise ValidationError(f"Unknown task status: {value!r}")


def parse_webhook(raw_body: bytes) -> WebhookEvent:
    """Extract the run id and status from a flat or enveloped webhook body.

    Statuses outside the tracked lifecycle (``cancelling``, ``action_required``
    and the like) parse with ``status=None`` instead of failing.
    """
    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"Webhook body is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")

    data = payload.get("data")
    if isinstance(data, dict) and "run_id" not in payload:
        payload = data

    run_id = payload.get("run_id")
    if not isinstance(run_id, str) or not run_id:
        raise MissingRunId("Missing run_id in webhook payload")
    raw_status = payload.get("status")
    try:
        status = parse_status(raw_status)
    except ValidationError:
        status = None
    return WebhookEvent(run_id=run_id, status=status, raw_status=raw_status)


# --- Outcome formatting ---


def format_outcome(run_id: str, output: ResearchOutput) -> str:
    parts = [render_prompt("messages.research_complete_header"), ""]
    if output.summary:
        parts += ["## Summary", output.summary, ""]
    if output.key_facts:
        parts.append("## Key Facts")
        parts += [f"{i}. {fact}" for i, fact in enumerate(output.key_facts, start=1)]
        parts.append("")
    if output.sources:
        parts.append("## Sources")
        parts += [f"{i}. {source}" for i, source in enumerate(output.sources, start=1)]
        parts.append("")
    parts.append(render_prompt("messages.research_footer", run_id=run_id))
    return "\n".join(parts)


def format_terminal(run_id: str, status: TaskStatus) -> str:
    return render_prompt(
        "messages.research_terminal",
        status_title=status.value.capitalize(),
        status_phrase=_TERMINAL_PHRASES.get(status, status.value),
        run_id=run_id,
    )


# --- Reconciliation ---


async def reconcile(
    run_id: str,
    status: TaskStatus | str,
    *,
    output: ResearchOutput | None = None,
    source: str = "webhook",
    store: Store | None = None,
) -> ReconcileOutcome:
    """Apply a status signal for ``run_id`` and emit the outcome at most once.

    ``output`` skips the result fetch when the signal already carries it.
    """
    store = store or get_store()
    status = parse_status(status) if not isinstance(status, TaskStatus) else status

    if await store.get_task_run(run_id) is None:
        raise NotFoundError(f"Task run not found: {run_id}")

    row = await store.update_task_status(run_id, status)
    if row is None:
        raise NotFoundError(f"Task run not found: {run_id}")
    # A run that was already terminal keeps its stored status.
    effective = TaskStatus(row["status"])
    if status.is_terminal and effective.is_terminal and status != effective:
        log_service.log_event(
            event_type="late_terminal_signal",
            message="Terminal signal arrived after the run was already closed",
            run_id=run_id,
            status=status.value,
            stored_status=effective.value,
            source=source,
        )
    if not effective.is_terminal:
        log_service.log_event(
            event_type="task_status_updated",
            message="Task run status updated",
            run_id=run_id,
            status=effective.value,
            source=source,
        )
        return ReconcileOutcome(run_id=run_id, status=effective)

    claimed = await store.claim_reconciliation(run_id)
    if claimed is None:
        log_service.log_event(
            event_type="reconcile_duplicate",
            message="Run already reconciled",
            run_id=run_id,
            status=effective.value,
            source=source,
        )
        return ReconcileOutcome(run_id=run_id, status=effective, duplicate=True)

    try:
        message = await _emit_outcome(store, claimed, effective, output)
    except Exception as e:
        log_service.log_event(
            event_type="reconcile_failed",
            message="Reconciliation failed; releasing claim",
            run_id=run_id,
            status=effective.value,
            source=source,
            error=str(e),
        )
        await store.release_reconciliation(run_id)
        raise

    log_service.log_event(
        event_type="reconciled",
        message="Research outcome recorded",
        run_id=run_id,
        status=effective.value,
        source=source,
        message_id=message["id"],
    )
    return ReconcileOutcome(run_id=run_id, status=effective, message_id=message["id"])


async def _emit_outcome(
    store: Store, task_run: dict[str, Any], status: TaskStatus, output: ResearchOutput | None
) -> dict[str, Any]:
    run_id = task_run["provider_run_id"]
    session_id = task_run["session_id"]

    if status != TaskStatus.COMPLETED:
        return await store.create_message(
            session_id,
            MessageRole.SYSTEM,
            format_terminal(run_id, status),
            {"run_id": run_id, "status": status.value, "error": True},
        )

    if output is None:
        try:
            output = await get_parallel_client().fetch_output(run_id)
        except ProviderError as e:
            return await store.create_message(
                session_id,
                MessageRole.SYSTEM,
                render_prompt("messages.result_unavailable", reason=e.message, run_id=run_id),
                {"run_id": run_id, "status": status.value, "error": True, "retryable": False},
            )

    results = output.to_dict()
    await store.save_task_result(run_id, results)
    return await store.create_message(
        session_id,
        MessageRole.RESEARCH,
        format_outcome(run_id, output),
        {"run_id": run_id, "status": status.value, "results": results},
    )


async def handle_webhook(
    raw_body: bytes, headers: Mapping[str, str], *, store: Store | None = None
) -> ReconcileOutcome:
    secret = settings.parallel_webhook_secret
    if secret:
        valid = verify_signature(
            secret,
            raw_body,
            webhook_id=headers.get("webhook-id", ""),
            timestamp=headers.get("webhook-timestamp", ""),
            signature_header=headers.get("webhook-signature", ""),
        )
        if not valid:
            log_service.log_event(
                event_type="webhook_rejected",
                message="Invalid webhook signature",
                webhook_id=headers.get("webhook-id"),
            )
            raise SignatureError("Invalid signature")
    else:
        log_service.logger.debug("PARALLEL_WEBHOOK_SECRET not set; webhook signature not verified")

    event = parse_webhook(raw_body)
    if event.status is None:
        # Acknowledged so the provider stops redelivering; nothing changes.
        log_service.log_event(
            event_type="webhook_status_ignored",
            message="Webhook status needs no action",
            run_id=event.run_id,
            status=event.raw_status,
        )
        return ReconcileOutcome(run_id=event.run_id, status=None, ignored=True)

    log_service.log_event(
        event_type="webhook_received",
        message="Task status webhook received",
        run_id=event.run_id,
        status=event.status.value,
    )
    return await reconcile(event.run_id, event.status, source="webhook", store=store)


async def sweep_stale_runs(
    *, store: Store | None = None, now: datetime | None = None
) -> list[str]:
    """Expire runs stuck in queued/running past the timeout. Returns expired run ids."""
    store = store or get_store()
    now = now or datetime.now(timezone.utc)
    older_than = now - timedelta(minutes=settings.stale_run_timeout_minutes)

    expired: list[str] = []
    for row in await store.list_stale_task_runs(older_than):
        run_id = row["provider_run_id"]
        try:
            outcome = await reconcile(run_id, TaskStatus.EXPIRED, source="sweep", store=store)
        except CopilotError as e:
            log_service.log_event(
                event_type="stale_sweep_run_failed",
                message="Could not expire stale run",
                run_id=run_id,
                error_type=e.kind,
                error=e.message,
            )
            continue
        if outcome.status == TaskStatus.EXPIRED and not outcome.duplicate:
            expired.append(run_id)

    log_service.log_event(
        event_type="stale_sweep",
        message="Stale run sweep finished",
        older_than=older_than.isoformat(),
        expired=expired,
    )
    return expired
