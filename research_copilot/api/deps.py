from __future__ import annotations

from fastapi import Header

from research_copilot.services.store import Store, get_store


def current_user_id(x_user_id: str | None = Header(default=None)) -> str | None:
    """Owner id forwarded by the authenticating proxy; absent in demo mode."""
    return x_user_id or None


def store() -> Store:
    return get_store()
