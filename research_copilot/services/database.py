"""PostgreSQL store using asyncpg."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator
from uuid import UUID

import asyncpg

from research_copilot.errors import PersistenceError
from research_copilot.models.research import ACTIVE_STATUSES, TaskStatus
from research_copilot.services import logger as log_service
from research_copilot.services.store import poll_task_run

_ACTIVE = [s.value for s in ACTIVE_STATUSES]

SESSION_COLUMNS = "id, title, user_id, status, created_at, updated_at, last_activity"
MESSAGE_COLUMNS = "id, session_id, role, content, metadata, created_at"
TASK_RUN_COLUMNS = (
    "id, session_id, provider_run_id, status, last_event_id, brief_text, result, "
    "completed_at, reconciled_at, created_at, updated_at"
)


def _coerce_json_object(value: Any) -> dict[str, Any]:
    """Normalize JSON-string columns into dictionaries."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _row(record: asyncpg.Record | None) -> dict[str, Any] | None:
    if record is None:
        return None
    row = dict(record)
    for key, value in row.items():
        if isinstance(value, UUID):
            row[key] = str(value)
    if "metadata" in row:
        row["metadata"] = _coerce_json_object(row["metadata"])
    if row.get("result") is not None:
        row["result"] = _coerce_json_object(row["result"])
    return row


class PostgresStore:
    def __init__(self, database_url: str, *, min_size: int = 1, max_size: int = 10):
        self._database_url = database_url
        self._min_size = min_size
        self._max_size = max_size
        self._pool: asyncpg.Pool | None = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self._database_url,
                min_size=self._min_size,
                max_size=self._max_size,
            )
        return self._pool

    @asynccontextmanager
    async def _conn(self, operation: str, table: str) -> AsyncIterator[asyncpg.Connection]:
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, OSError) as e:
            log_service.log_db_operation(operation, table, "error", error=str(e))
            raise PersistenceError(
                f"Datastore {operation} on {table} failed: {e}", operation=operation, table=table
            ) from e

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # --- Sessions ---

    async def create_session(self, title: str, user_id: str | None = None) -> dict[str, Any]:
        async with self._conn("insert", "chat_sessions") as conn:
            result = await conn.fetchrow(
                f"""
                INSERT INTO chat_sessions (title, user_id)
                VALUES ($1, $2)
                RETURNING {SESSION_COLUMNS}
                """,
                title,
                user_id,
            )
            return _row(result)

    async def list_sessions(
        self, user_id: str | None = None, status: str | None = "active"
    ) -> list[dict[str, Any]]:
        async with self._conn("select", "chat_sessions") as conn:
            results = await conn.fetch(
                f"""
                SELECT {SESSION_COLUMNS}
                FROM chat_sessions
                WHERE ($1::text IS NULL OR status = $1)
                  AND ($2::uuid IS NULL OR user_id = $2)
                ORDER BY last_activity DESC
                """,
                status,
                user_id,
            )
            return [_row(r) for r in results]

    async def get_session(self, session_id: str) -> dict[str, Any] | None:
        async with self._conn("select", "chat_sessions") as conn:
            result = await conn.fetchrow(
                f"SELECT {SESSION_COLUMNS} FROM chat_sessions WHERE id = $1",
                session_id,
            )
            return _row(result)

    async def update_session(self, session_id: str, **fields: Any) -> dict[str, Any] | None:
        allowed = {"title", "status"}
        updates = {k: v for k, v in fields.items() if k in allowed}
        if not updates:
            return await self.get_session(session_id)

        set_clause = ", ".join(f"{k} = ${i + 2}" for i, k in enumerate(updates.keys()))
        async with self._conn("update", "chat_sessions") as conn:
            result = await conn.fetchrow(
                f"""
                UPDATE chat_sessions
                SET {set_clause}, updated_at = now(), last_activity = now()
                WHERE id = $1
                RETURNING {SESSION_COLUMNS}
                """,
                session_id,
                *updates.values(),
            )
            return _row(result)

    async def touch_session(self, session_id: str) -> None:
        async with self._conn("update", "chat_sessions") as conn:
            await conn.execute(
                "UPDATE chat_sessions SET updated_at = now(), last_activity = now() WHERE id = $1",
                session_id,
            )

    async def delete_session(self, session_id: str) -> None:
        async with self._conn("delete", "chat_sessions") as conn:
            await conn.execute("DELETE FROM chat_sessions WHERE id = $1", session_id)

    async def count_active_sessions(self, user_id: str | None) -> int:
        async with self._conn("select", "chat_sessions") as conn:
            return await conn.fetchval(
                """
                SELECT count(*) FROM chat_sessions
                WHERE status = 'active' AND ($1::uuid IS NULL OR user_id = $1)
                """,
                user_id,
            )

    # --- Messages ---

    async def create_message(
        self, session_id: str, role: str, content: str, metadata: dict | None = None
    ) -> dict[str, Any]:
        async with self._conn("insert", "messages") as conn:
            result = await conn.fetchrow(
                f"""
                INSERT INTO messages (session_id, role, content, metadata)
                VALUES ($1, $2, $3, $4)
                RETURNING {MESSAGE_COLUMNS}
                """,
                session_id,
                role,
                content,
                json.dumps(metadata or {}),
            )
            return _row(result)

    async def get_messages(self, session_id: str) -> list[dict[str, Any]]:
        async with self._conn("select", "messages") as conn:
            results = await conn.fetch(
                f"""
                SELECT {MESSAGE_COLUMNS}
                FROM messages
                WHERE session_id = $1
                ORDER BY created_at, seq
                """,
                session_id,
            )
            return [_row(r) for r in results]

    async def update_message(self, message_id: str, content: str) -> dict[str, Any] | None:
        async with self._conn("update", "messages") as conn:
            result = await conn.fetchrow(
                f"UPDATE messages SET content = $2 WHERE id = $1 RETURNING {MESSAGE_COLUMNS}",
                message_id,
                content,
            )
            return _row(result)

    # --- Task runs ---

    async def create_task_run(
        self, session_id: str, provider_run_id: str, brief_text: str | None = None
    ) -> dict[str, Any]:
        async with self._conn("insert", "task_runs") as conn:
            result = await conn.fetchrow(
                f"""
                INSERT INTO task_runs (session_id, provider_run_id, brief_text, status)
                VALUES ($1, $2, $3, 'queued')
                RETURNING {TASK_RUN_COLUMNS}
                """,
                session_id,
                provider_run_id,
                brief_text,
            )
            return _row(result)

    async def get_task_run(self, provider_run_id: str) -> dict[str, Any] | None:
        async with self._conn("select", "task_runs") as conn:
            result = await conn.fetchrow(
                f"SELECT {TASK_RUN_COLUMNS} FROM task_runs WHERE provider_run_id = $1",
                provider_run_id,
            )
            return _row(result)

    async def update_task_status(self, provider_run_id: str, status: str) -> dict[str, Any] | None:
        terminal = TaskStatus(status).is_terminal
        async with self._conn("update", "task_runs") as conn:
            result = await conn.fetchrow(
                f"""
                UPDATE task_runs
                SET status = $2,
                    completed_at = CASE WHEN $3 THEN now() ELSE completed_at END,
                    updated_at = now()
                WHERE provider_run_id = $1 AND status = ANY($4::text[])
                RETURNING {TASK_RUN_COLUMNS}
                """,
                provider_run_id,
                status,
                terminal,
                _ACTIVE,
            )
        if result is not None:
            return _row(result)
        return await self.get_task_run(provider_run_id)

    async def claim_reconciliation(self, provider_run_id: str) -> dict[str, Any] | None:
        async with self._conn("update", "task_runs") as conn:
            result = await conn.fetchrow(
                f"""
                UPDATE task_runs
                SET reconciled_at = now()
                WHERE provider_run_id = $1 AND reconciled_at IS NULL
                RETURNING {TASK_RUN_COLUMNS}
                """,
                provider_run_id,
            )
            return _row(result)

    async def release_reconciliation(self, provider_run_id: str) -> None:
        async with self._conn("update", "task_runs") as conn:
            await conn.execute(
                "UPDATE task_runs SET reconciled_at = NULL WHERE provider_run_id = $1",
                provider_run_id,
            )

    async def save_task_result(self, provider_run_id: str, result: dict[str, Any]) -> None:
        async with self._conn("update", "task_runs") as conn:
            await conn.execute(
                "UPDATE task_runs SET result = $2, updated_at = now() WHERE provider_run_id = $1",
                provider_run_id,
                json.dumps(result),
            )

    async def update_last_event_id(self, provider_run_id: str, event_id: str) -> None:
        async with self._conn("update", "task_runs") as conn:
            await conn.execute(
                "UPDATE task_runs SET last_event_id = $2 WHERE provider_run_id = $1",
                provider_run_id,
                event_id,
            )

    async def list_stale_task_runs(self, older_than: datetime) -> list[dict[str, Any]]:
        async with self._conn("select", "task_runs") as conn:
            results = await conn.fetch(
                f"""
                SELECT {TASK_RUN_COLUMNS}
                FROM task_runs
                WHERE status = ANY($1::text[]) AND created_at < $2
                ORDER BY created_at
                """,
                _ACTIVE,
                older_than,
            )
            return [_row(r) for r in results]

    def watch_task_run(self, provider_run_id: str) -> AsyncIterator[dict[str, Any]]:
        return poll_task_run(self, provider_run_id)
