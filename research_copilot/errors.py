"""Error taxonomy shared by services and HTTP handlers.

Every error carries an HTTP ``status_code`` and a stable ``kind`` so the
boundary handler in ``research_copilot.main`` can render the same
``{error, type, timestamp}`` body for all of them.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


class CopilotError(Exception):
    status_code: int = 500
    kind: str = "CopilotError"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_response(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "type": self.kind,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


class ConfigurationError(CopilotError):
    """A required credential or setting is missing."""

    status_code = 500
    kind = "ConfigurationError"


class ValidationError(CopilotError):
    status_code = 400
    kind = "ValidationError"


class InvalidBriefFormat(ValidationError):
    kind = "InvalidBriefFormat"


class MissingRunId(ValidationError):
    kind = "MissingRunId"


class SignatureError(ValidationError):
    status_code = 401
    kind = "SignatureError"


class SessionLimitReached(ValidationError):
    status_code = 409
    kind = "SessionLimitReached"


class ProviderError(CopilotError):
    """Non-2xx, unreachable, or malformed answer from an external API.

    ``cause`` distinguishes transport failures (``network``), HTTP failures
    (``http_status``), undecodable bodies (``invalid_body``) and bodies that
    decode but lack a required field (``missing_run_id``, ``empty_content``).
    """

    status_code = 502
    kind = "ProviderError"

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        cause: str = "http_status",
        upstream_status: int | None = None,
        **details: Any,
    ):
        super().__init__(message, **details)
        self.provider = provider
        self.cause = cause
        self.upstream_status = upstream_status


class NoResponseGenerated(ProviderError):
    kind = "NoResponseGenerated"

    def __init__(self, message: str = "No response generated", *, provider: str = ""):
        super().__init__(message, provider=provider, cause="empty_content")


class NotFoundError(CopilotError):
    status_code = 404
    kind = "NotFoundError"


class PersistenceError(CopilotError):
    """Datastore read or write failed; the caller must assume partial effect."""

    status_code = 500
    kind = "PersistenceError"

    def __init__(self, message: str, *, operation: str = "", table: str = "", **details: Any):
        super().__init__(message, **details)
        self.operation = operation
        self.table = table
