"""Datastore interface for sessions, messages and task runs.

One backend is chosen at startup by ``settings.store_backend`` and used for the
life of the process:

* ``supabase``: hosted Postgres through supabase-py (service-role key).
* ``postgres``: direct asyncpg pool on ``DATABASE_URL``.
* ``memory``: process-local "test mode" store for development without
  credentials.

Rows are plain dicts shaped like the tables in ``migrations/001_init.sql``.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, AsyncIterator, Protocol

from research_copilot.config import settings
from research_copilot.errors import ConfigurationError


class Store(Protocol):
    # --- Sessions ---
    async def create_session(self, title: str, user_id: str | None = None) -> dict[str, Any]: ...
    async def list_sessions(
        self, user_id: str | None = None, status: str | None = "active"
    ) -> list[dict[str, Any]]: ...
    async def get_session(self, session_id: str) -> dict[str, Any] | None: ...
    async def update_session(self, session_id: str, **fields: Any) -> dict[str, Any] | None: ...
    async def touch_session(self, session_id: str) -> None: ...
    async def delete_session(self, session_id: str) -> None: ...
    async def count_active_sessions(self, user_id: str | None) -> int: ...

    # --- Messages ---
    async def create_message(
        self, session_id: str, role: str, content: str, metadata: dict | None = None
    ) -> dict[str, Any]: ...
    async def get_messages(self, session_id: str) -> list[dict[str, Any]]: ...
    async def update_message(self, message_id: str, content: str) -> dict[str, Any] | None: ...

    # --- Task runs ---
    async def create_task_run(
        self, session_id: str, provider_run_id: str, brief_text: str | None = None
    ) -> dict[str, Any]: ...
    async def get_task_run(self, provider_run_id: str) -> dict[str, Any] | None: ...
    async def update_task_status(self, provider_run_id: str, status: str) -> dict[str, Any] | None:
        """Move a run to ``status`` unless it is already terminal.

        Returns the row as stored afterwards, or None when the run is unknown.
        """
        ...
    async def claim_reconciliation(self, provider_run_id: str) -> dict[str, Any] | None:
        """Compare-and-set ``reconciled_at`` from NULL; None when already claimed."""
        ...
    async def release_reconciliation(self, provider_run_id: str) -> None: ...
    async def save_task_result(self, provider_run_id: str, result: dict[str, Any]) -> None: ...
    async def update_last_event_id(self, provider_run_id: str, event_id: str) -> None: ...
    async def list_stale_task_runs(self, older_than: datetime) -> list[dict[str, Any]]: ...
    def watch_task_run(self, provider_run_id: str) -> AsyncIterator[dict[str, Any]]: ...

    async def close(self) -> None: ...


def _change_key(row: dict[str, Any]) -> tuple:
    return (row.get("status"), row.get("reconciled_at") is not None, row.get("result") is not None)


async def poll_task_run(
    store: Store, provider_run_id: str, *, interval: float | None = None
) -> AsyncIterator[dict[str, Any]]:
    """Change feed built on periodic reads; yields the row whenever it changes."""
    delay = settings.change_feed_poll_seconds if interval is None else interval
    last_key: tuple | None = None
    while True:
        row = await store.get_task_run(provider_run_id)
        if row is not None:
            key = _change_key(row)
            if key != last_key:
                last_key = key
                yield row
        await asyncio.sleep(delay)


_store: Store | None = None


def get_store() -> Store:
    global _store
    if _store is None:
        backend = settings.store_backend.lower().strip()
        if backend == "memory":
            from research_copilot.services.local_store import MemoryStore

            _store = MemoryStore()
        elif backend == "supabase":
            from research_copilot.services.supabase import SupabaseStore

            if not settings.supabase_url or not settings.supabase_service_role_key:
                raise ConfigurationError(
                    "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for STORE_BACKEND=supabase"
                )
            _store = SupabaseStore(settings.supabase_url, settings.supabase_service_role_key)
        elif backend == "postgres":
            from research_copilot.services.database import PostgresStore

            if not settings.database_url:
                raise ConfigurationError("DATABASE_URL is required for STORE_BACKEND=postgres")
            _store = PostgresStore(settings.database_url)
        else:
            raise ConfigurationError(f"Unsupported STORE_BACKEND: {settings.store_backend}")
    return _store


def set_store(store: Store | None) -> None:
    """Replace the process store (startup wiring and tests)."""
    global _store
    _store = store


async def close_store() -> None:
    global _store
    if _store is not None:
        await _store.close()
        _store = None
