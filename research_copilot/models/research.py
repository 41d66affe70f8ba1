from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    RESEARCH = "research"
    RESEARCH_PROGRESS = "research_progress"
    SYSTEM = "system"
    WEBHOOK = "webhook"


# Roles replayed to the chat-completion provider; the rest are UI notices.
CONVERSATIONAL_ROLES = frozenset({MessageRole.USER, MessageRole.ASSISTANT})


class SessionStatus(StrEnum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class TaskStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELED, TaskStatus.EXPIRED}
)
ACTIVE_STATUSES = frozenset({TaskStatus.QUEUED, TaskStatus.RUNNING})


class ResearchBrief(BaseModel):
    """Structured research objective produced from conversation context."""

    objective: str
    constraints: list[str]
    target_sources: list[str]
    disallowed_sources: list[str]
    timebox_minutes: int | float
    expected_output_fields: list[str]
    summary: str


REQUIRED_BRIEF_FIELDS: tuple[str, ...] = tuple(ResearchBrief.model_fields)


@dataclass(slots=True)
class ChatTurn:
    role: str  # user | model
    text: str


@dataclass(slots=True)
class ChatReply:
    content: str
    tokens: int
    model: str


@dataclass(slots=True)
class DispatchResult:
    run_id: str
    sse_url: str
    status: TaskStatus = TaskStatus.QUEUED


@dataclass(slots=True)
class ResearchOutput:
    """Normalized research result; unknown provider fields are kept in ``extra``."""

    summary: str = ""
    key_facts: list[str] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> "ResearchOutput":
        if isinstance(payload, str):
            return cls(summary=payload)
        if not isinstance(payload, dict):
            return cls()
        known = {"summary", "key_facts", "sources"}
        summary = payload.get("summary")
        return cls(
            summary=summary if isinstance(summary, str) else "",
            key_facts=[str(f) for f in payload.get("key_facts") or [] if f is not None],
            sources=[_source_label(s) for s in payload.get("sources") or [] if s is not None],
            extra={k: v for k, v in payload.items() if k not in known},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "key_facts": self.key_facts,
            "sources": self.sources,
            **self.extra,
        }


def _source_label(source: Any) -> str:
    if isinstance(source, dict):
        url = source.get("url")
        title = source.get("title")
        if title and url:
            return f"{title} ({url})"
        return str(url or title or source)
    return str(source)
