from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from research_copilot.models.research import ResearchBrief


class _CamelRequest(BaseModel):
    # The web client posts camelCase keys; snake_case is accepted too.
    model_config = ConfigDict(populate_by_name=True)


# --- Requests ---


class ChatSendRequest(_CamelRequest):
    session_id: str = Field(alias="sessionId")
    message: str


class ChatPlanRequest(_CamelRequest):
    session_id: str = Field(alias="sessionId")


class ResearchStartRequest(_CamelRequest):
    session_id: str = Field(alias="sessionId")
    brief: ResearchBrief


class SessionCreateRequest(BaseModel):
    title: str = "New Session"


class SessionUpdateRequest(BaseModel):
    title: str | None = None
    status: str | None = None


class MessageCreateRequest(BaseModel):
    content: str


class MessageUpdateRequest(BaseModel):
    content: str


# --- Responses ---


class ChatSendResponse(BaseModel):
    content: str
    tokens: int
    model: str


class ResearchStartResponse(BaseModel):
    run_id: str
    sse_url: str
    status: str


class SessionResponse(BaseModel):
    id: str
    title: str
    user_id: str | None = None
    status: str
    created_at: datetime
    updated_at: datetime
    last_activity: datetime


class MessageResponse(BaseModel):
    id: str
    session_id: str
    role: str
    content: str
    metadata: dict[str, Any]
    created_at: datetime


class SessionDetailResponse(BaseModel):
    session: SessionResponse
    messages: list[MessageResponse]


class SendMessageResponse(BaseModel):
    route: str  # chat | research
    messages: list[MessageResponse]
    run_id: str | None = None


class WebhookResponse(BaseModel):
    success: bool
    duplicate: bool = False
    ignored: bool = False
    run_id: str | None = None
    status: str | None = None


class SweepResponse(BaseModel):
    expired: list[str]
