from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    PROGRESS = "progress"
    LIVE_UPDATE = "live_update"
    RESEARCH_COMPLETE = "research_complete"
    RESEARCH_FAILED = "research_failed"
    CANCELED = "canceled"
    ERROR = "error"


@dataclass
class SSEEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def format(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps(self.data)}\n\n"


@dataclass(slots=True)
class ProviderFrame:
    """One decoded server-push frame from the research provider's event stream."""

    data: dict[str, Any]
    event: str | None = None
    event_id: str | None = None

    @property
    def type(self) -> str:
        value = self.data.get("type")
        return value if isinstance(value, str) else (self.event or "")

    @property
    def run_status(self) -> str | None:
        run = self.data.get("run")
        if isinstance(run, dict) and isinstance(run.get("status"), str):
            return run["status"]
        return None
