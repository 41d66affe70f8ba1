from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from supabase import Client, create_client

from research_copilot.errors import PersistenceError
from research_copilot.models.research import ACTIVE_STATUSES, TaskStatus
from research_copilot.services import logger as log_service
from research_copilot.services.store import poll_task_run

_ACTIVE = [s.value for s in ACTIVE_STATUSES]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _coerce_json_object(value: Any) -> dict[str, Any]:
    """Normalize legacy JSON-string fields into dictionaries."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _normalize_task_run(row: dict[str, Any]) -> dict[str, Any]:
    if row.get("result") is not None:
        row["result"] = _coerce_json_object(row["result"])
    return row


class SupabaseStore:
    """Store backed by supabase-py; blocking calls run in a worker thread."""

    def __init__(self, url: str, key: str, client: Client | None = None):
        self._client = client or create_client(url, key)

    async def _execute(self, query: Any, operation: str, table: str) -> Any:
        try:
            return await asyncio.to_thread(query.execute)
        except Exception as e:
            log_service.log_db_operation(operation, table, "error", error=str(e))
            raise PersistenceError(
                f"Datastore {operation} on {table} failed: {e}", operation=operation, table=table
            ) from e

    def _table(self, name: str) -> Any:
        return self._client.table(name)

    # --- Sessions ---

    async def create_session(self, title: str, user_id: str | None = None) -> dict[str, Any]:
        data: dict[str, Any] = {"title": title}
        if user_id:
            data["user_id"] = user_id
        result = await self._execute(self._table("chat_sessions").insert(data), "insert", "chat_sessions")
        return result.data[0]

    async def list_sessions(
        self, user_id: str | None = None, status: str | None = "active"
    ) -> list[dict[str, Any]]:
        query = self._table("chat_sessions").select("*")
        if status:
            query = query.eq("status", status)
        if user_id:
            query = query.eq("user_id", user_id)
        result = await self._execute(query.order("last_activity", desc=True), "select", "chat_sessions")
        return result.data or []

    async def get_session(self, session_id: str) -> dict[str, Any] | None:
        result = await self._execute(
            self._table("chat_sessions").select("*").eq("id", session_id), "select", "chat_sessions"
        )
        return result.data[0] if result.data else None

    async def update_session(self, session_id: str, **fields: Any) -> dict[str, Any] | None:
        updates = {k: v for k, v in fields.items() if k in {"title", "status"}}
        updates["updated_at"] = _now_iso()
        result = await self._execute(
            self._table("chat_sessions").update(updates).eq("id", session_id), "update", "chat_sessions"
        )
        return result.data[0] if result.data else None

    async def touch_session(self, session_id: str) -> None:
        # last_activity follows updated_at through a trigger.
        await self._execute(
            self._table("chat_sessions").update({"updated_at": _now_iso()}).eq("id", session_id),
            "update",
            "chat_sessions",
        )

    async def delete_session(self, session_id: str) -> None:
        await self._execute(
            self._table("chat_sessions").delete().eq("id", session_id), "delete", "chat_sessions"
        )

    async def count_active_sessions(self, user_id: str | None) -> int:
        return len(await self.list_sessions(user_id=user_id, status="active"))

    # --- Messages ---

    async def create_message(
        self, session_id: str, role: str, content: str, metadata: dict | None = None
    ) -> dict[str, Any]:
        data = {
            "session_id": session_id,
            "role": role,
            "content": content,
            "metadata": metadata or {},
        }
        result = await self._execute(self._table("messages").insert(data), "insert", "messages")
        row = result.data[0]
        row["metadata"] = _coerce_json_object(row.get("metadata"))
        return row

    async def get_messages(self, session_id: str) -> list[dict[str, Any]]:
        result = await self._execute(
            self._table("messages").select("*").eq("session_id", session_id).order("created_at").order("seq"),
            "select",
            "messages",
        )
        rows = result.data or []
        for row in rows:
            row["metadata"] = _coerce_json_object(row.get("metadata"))
        return rows

    async def update_message(self, message_id: str, content: str) -> dict[str, Any] | None:
        result = await self._execute(
            self._table("messages").update({"content": content}).eq("id", message_id), "update", "messages"
        )
        return result.data[0] if result.data else None

    # --- Task runs ---

    async def create_task_run(
        self, session_id: str, provider_run_id: str, brief_text: str | None = None
    ) -> dict[str, Any]:
        data = {
            "session_id": session_id,
            "provider_run_id": provider_run_id,
            "brief_text": brief_text,
            "status": TaskStatus.QUEUED.value,
        }
        result = await self._execute(self._table("task_runs").insert(data), "insert", "task_runs")
        return result.data[0]

    async def get_task_run(self, provider_run_id: str) -> dict[str, Any] | None:
        result = await self._execute(
            self._table("task_runs").select("*").eq("provider_run_id", provider_run_id), "select", "task_runs"
        )
        return _normalize_task_run(result.data[0]) if result.data else None

    async def update_task_status(self, provider_run_id: str, status: str) -> dict[str, Any] | None:
        updates: dict[str, Any] = {"status": status}
        if TaskStatus(status).is_terminal:
            updates["completed_at"] = _now_iso()
        result = await self._execute(
            self._table("task_runs")
            .update(updates)
            .eq("provider_run_id", provider_run_id)
            .in_("status", _ACTIVE),
            "update",
            "task_runs",
        )
        if result.data:
            return _normalize_task_run(result.data[0])
        # Unknown run, or already terminal: report the stored row unchanged.
        return await self.get_task_run(provider_run_id)

    async def claim_reconciliation(self, provider_run_id: str) -> dict[str, Any] | None:
        result = await self._execute(
            self._table("task_runs")
            .update({"reconciled_at": _now_iso()})
            .eq("provider_run_id", provider_run_id)
            .is_("reconciled_at", "null"),
            "update",
            "task_runs",
        )
        return _normalize_task_run(result.data[0]) if result.data else None

    async def release_reconciliation(self, provider_run_id: str) -> None:
        await self._execute(
            self._table("task_runs").update({"reconciled_at": None}).eq("provider_run_id", provider_run_id),
            "update",
            "task_runs",
        )

    async def save_task_result(self, provider_run_id: str, result: dict[str, Any]) -> None:
        await self._execute(
            self._table("task_runs").update({"result": result}).eq("provider_run_id", provider_run_id),
            "update",
            "task_runs",
        )

    async def update_last_event_id(self, provider_run_id: str, event_id: str) -> None:
        await self._execute(
            self._table("task_runs")
            .update({"last_event_id": event_id})
            .eq("provider_run_id", provider_run_id),
            "update",
            "task_runs",
        )

    async def list_stale_task_runs(self, older_than: datetime) -> list[dict[str, Any]]:
        result = await self._execute(
            self._table("task_runs")
            .select("*")
            .in_("status", _ACTIVE)
            .lt("created_at", older_than.isoformat()),
            "select",
            "task_runs",
        )
        return [_normalize_task_run(row) for row in result.data or []]

    def watch_task_run(self, provider_run_id: str) -> AsyncIterator[dict[str, Any]]:
        return poll_task_run(self, provider_run_id)

    async def close(self) -> None:
        return None
