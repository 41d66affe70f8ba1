from __future__ import annotations

from typing import Any

from research_copilot.models.events import EventType, SSEEvent


def progress(run_id: str, value: float, status: str) -> SSEEvent:
    return SSEEvent(
        event=EventType.PROGRESS,
        data={"run_id": run_id, "progress": round(value, 2), "status": status},
    )


def live_update(run_id: str, update: dict[str, Any]) -> SSEEvent:
    return SSEEvent(event=EventType.LIVE_UPDATE, data={"run_id": run_id, **update})


def research_complete(run_id: str, result: dict[str, Any] | None) -> SSEEvent:
    """Emit the terminal success event with the normalized result."""
    return SSEEvent(
        event=EventType.RESEARCH_COMPLETE,
        data={"run_id": run_id, "status": "completed", "result": result},
    )


def research_failed(run_id: str, run_status: str, error: str | None = None) -> SSEEvent:
    data: dict[str, Any] = {"run_id": run_id, "status": "failed", "run_status": run_status}
    if error:
        data["error"] = error
    return SSEEvent(event=EventType.RESEARCH_FAILED, data=data)


def canceled(run_id: str) -> SSEEvent:
    return SSEEvent(event=EventType.CANCELED, data={"run_id": run_id, "status": "idle"})


def error(message: str, run_id: str | None = None) -> SSEEvent:
    data: dict[str, Any] = {"message": message}
    if run_id:
        data["run_id"] = run_id
    return SSEEvent(event=EventType.ERROR, data=data)
