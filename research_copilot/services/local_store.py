"""Process-local store for development and tests ("test mode").

Nothing is persisted across restarts. A single asyncio lock serializes
mutations so the compare-and-set helpers behave like their SQL counterparts.
"""
from __future__ import annotations

import asyncio
import copy
import itertools
from datetime import datetime, timezone
from typing import Any, AsyncIterator
from uuid import uuid4

from research_copilot.models.research import (
    ACTIVE_STATUSES,
    SessionStatus,
    TaskStatus,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    def __init__(self) -> None:
        self._sessions: dict[str, dict[str, Any]] = {}
        self._messages: dict[str, dict[str, Any]] = {}
        self._task_runs: dict[str, dict[str, Any]] = {}
        # Insertion sequence breaks created_at ties so transcript order is stable.
        self._seq = itertools.count()
        self._message_seq: dict[str, int] = {}
        self._lock = asyncio.Lock()
        self._changed = asyncio.Condition()

    # --- Sessions ---

    async def create_session(self, title: str, user_id: str | None = None) -> dict[str, Any]:
        now = _now()
        row = {
            "id": str(uuid4()),
            "title": title,
            "user_id": user_id,
            "status": SessionStatus.ACTIVE.value,
            "created_at": now,
            "updated_at": now,
            "last_activity": now,
        }
        async with self._lock:
            self._sessions[row["id"]] = row
        return dict(row)

    async def list_sessions(
        self, user_id: str | None = None, status: str | None = "active"
    ) -> list[dict[str, Any]]:
        rows = [
            dict(s)
            for s in self._sessions.values()
            if (status is None or s["status"] == status)
            and (user_id is None or s["user_id"] == user_id)
        ]
        rows.sort(key=lambda s: s["last_activity"], reverse=True)
        return rows

    async def get_session(self, session_id: str) -> dict[str, Any] | None:
        row = self._sessions.get(session_id)
        return dict(row) if row else None

    async def update_session(self, session_id: str, **fields: Any) -> dict[str, Any] | None:
        allowed = {k: v for k, v in fields.items() if k in {"title", "status"}}
        async with self._lock:
            row = self._sessions.get(session_id)
            if row is None:
                return None
            now = _now()
            row.update(allowed, updated_at=now, last_activity=now)
            return dict(row)

    async def touch_session(self, session_id: str) -> None:
        async with self._lock:
            row = self._sessions.get(session_id)
            if row is not None:
                now = _now()
                row["updated_at"] = now
                row["last_activity"] = now

    async def delete_session(self, session_id: str) -> None:
        async with self._lock:
            self._sessions.pop(session_id, None)
            for message_id in [m for m, row in self._messages.items() if row["session_id"] == session_id]:
                self._messages.pop(message_id)
                self._message_seq.pop(message_id, None)
            for run_id in [r for r, row in self._task_runs.items() if row["session_id"] == session_id]:
                self._task_runs.pop(run_id)

    async def count_active_sessions(self, user_id: str | None) -> int:
        return len(await self.list_sessions(user_id=user_id, status=SessionStatus.ACTIVE.value))

    # --- Messages ---

    async def create_message(
        self, session_id: str, role: str, content: str, metadata: dict | None = None
    ) -> dict[str, Any]:
        row = {
            "id": str(uuid4()),
            "session_id": session_id,
            "role": role,
            "content": content,
            "metadata": copy.deepcopy(metadata or {}),
            "created_at": _now(),
        }
        async with self._lock:
            self._messages[row["id"]] = row
            self._message_seq[row["id"]] = next(self._seq)
        return copy.deepcopy(row)

    async def get_messages(self, session_id: str) -> list[dict[str, Any]]:
        rows = [row for row in self._messages.values() if row["session_id"] == session_id]
        rows.sort(key=lambda r: (r["created_at"], self._message_seq[r["id"]]))
        return [copy.deepcopy(r) for r in rows]

    async def update_message(self, message_id: str, content: str) -> dict[str, Any] | None:
        async with self._lock:
            row = self._messages.get(message_id)
            if row is None:
                return None
            row["content"] = content
            return copy.deepcopy(row)

    # --- Task runs ---

    async def create_task_run(
        self, session_id: str, provider_run_id: str, brief_text: str | None = None
    ) -> dict[str, Any]:
        now = _now()
        row = {
            "id": str(uuid4()),
            "session_id": session_id,
            "provider_run_id": provider_run_id,
            "status": TaskStatus.QUEUED.value,
            "last_event_id": None,
            "brief_text": brief_text,
            "result": None,
            "completed_at": None,
            "reconciled_at": None,
            "created_at": now,
            "updated_at": now,
        }
        async with self._lock:
            if provider_run_id in self._task_runs:
                raise ValueError(f"Task run already exists: {provider_run_id}")
            self._task_runs[provider_run_id] = row
        await self._notify()
        return copy.deepcopy(row)

    async def get_task_run(self, provider_run_id: str) -> dict[str, Any] | None:
        row = self._task_runs.get(provider_run_id)
        return copy.deepcopy(row) if row else None

    async def update_task_status(self, provider_run_id: str, status: str) -> dict[str, Any] | None:
        changed = False
        async with self._lock:
            row = self._task_runs.get(provider_run_id)
            if row is None:
                return None
            if TaskStatus(row["status"]) in ACTIVE_STATUSES and row["status"] != status:
                now = _now()
                row["status"] = status
                row["updated_at"] = now
                if TaskStatus(status).is_terminal:
                    row["completed_at"] = now
                changed = True
            snapshot = copy.deepcopy(row)
        if changed:
            await self._notify()
        return snapshot

    async def claim_reconciliation(self, provider_run_id: str) -> dict[str, Any] | None:
        async with self._lock:
            row = self._task_runs.get(provider_run_id)
            if row is None or row["reconciled_at"] is not None:
                return None
            row["reconciled_at"] = _now()
            return copy.deepcopy(row)

    async def release_reconciliation(self, provider_run_id: str) -> None:
        async with self._lock:
            row = self._task_runs.get(provider_run_id)
            if row is not None:
                row["reconciled_at"] = None

    async def save_task_result(self, provider_run_id: str, result: dict[str, Any]) -> None:
        async with self._lock:
            row = self._task_runs.get(provider_run_id)
            if row is not None:
                row["result"] = copy.deepcopy(result)
                row["updated_at"] = _now()
        await self._notify()

    async def update_last_event_id(self, provider_run_id: str, event_id: str) -> None:
        async with self._lock:
            row = self._task_runs.get(provider_run_id)
            if row is not None:
                row["last_event_id"] = event_id

    async def list_stale_task_runs(self, older_than: datetime) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(row)
            for row in self._task_runs.values()
            if TaskStatus(row["status"]) in ACTIVE_STATUSES and row["created_at"] < older_than
        ]

    async def watch_task_run(self, provider_run_id: str) -> AsyncIterator[dict[str, Any]]:
        last: tuple | None = None
        while True:
            async with self._changed:
                # Read under the condition so a notify between read and wait is not lost.
                while True:
                    row = self._task_runs.get(provider_run_id)
                    key = (row["status"], row["result"] is not None) if row else None
                    if key is not None and key != last:
                        break
                    await self._changed.wait()
                last = key
                snapshot = copy.deepcopy(row)
            yield snapshot

    async def _notify(self) -> None:
        async with self._changed:
            self._changed.notify_all()

    async def close(self) -> None:
        return None
