"""Progress tracking for one research run.

The tracker races two completion signals: the provider's event stream and
the datastore change feed for the run's row. Whichever reports a terminal
status first wins; the other watcher is stopped and later signals are
ignored. Progress before that point is synthetic (a linear fill), because the
provider does not report a completion percentage.
"""
from __future__ import annotations

import asyncio
import json
import time
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, AsyncIterator, Callable
from uuid import uuid4

from research_copilot.config import settings
from research_copilot.errors import CopilotError, ProviderError
from research_copilot.models.events import ProviderFrame, SSEEvent
from research_copilot.models.research import ResearchOutput, TaskStatus
from research_copilot.services import logger as log_service
from research_copilot.services import streaming
from research_copilot.services.parallel import ParallelClient, get_parallel_client
from research_copilot.services.reconciler import parse_status, reconcile
from research_copilot.services.store import Store, get_store

SNAP_FRAME_MS = 50


class TrackerStatus(StrEnum):
    IDLE = "idle"
    RUNNING_FILLING = "running_filling"
    RUNNING_FULL_WAITING = "running_full_waiting"
    COMPLETED = "completed"
    FAILED = "failed"


def synthetic_progress(elapsed_seconds: float, fill_duration_seconds: float) -> float:
    """Linear fill from 0 to 100 over ``fill_duration_seconds``, then hold."""
    if fill_duration_seconds <= 0:
        return 100.0
    return min(max(elapsed_seconds, 0.0) / fill_duration_seconds * 100.0, 100.0)


def snap_progress(start: float, elapsed_ms: float, snap_ms: float) -> float:
    if snap_ms <= 0:
        return 100.0
    fraction = min(max(elapsed_ms, 0.0) / snap_ms, 1.0)
    return start + (100.0 - start) * fraction


class ProgressTracker:
    def __init__(
        self,
        run_id: str,
        *,
        store: Store | None = None,
        client: ParallelClient | None = None,
        fill_duration: float | None = None,
        snap_ms: float | None = None,
        tick_seconds: float | None = None,
        reconnect_delay: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.run_id = run_id
        self._store = store
        self._client = client
        self.fill_duration = settings.progress_fill_duration_seconds if fill_duration is None else fill_duration
        self.snap_ms = settings.progress_snap_ms if snap_ms is None else snap_ms
        self.tick_seconds = settings.progress_tick_seconds if tick_seconds is None else tick_seconds
        self.reconnect_delay = (
            settings.stream_reconnect_delay_seconds if reconnect_delay is None else reconnect_delay
        )
        self._clock = clock

        self.status = TrackerStatus.IDLE
        self.progress = 0.0
        self.live_updates: list[dict[str, Any]] = []
        self.result: ResearchOutput | None = None
        self.error: str | None = None
        self.run_status: TaskStatus | None = None
        self.winner: str | None = None

        self._completed = False
        self._started_at = 0.0
        self._tasks: list[asyncio.Task] = []
        self._queue: asyncio.Queue[SSEEvent | None] = asyncio.Queue()

    @property
    def store(self) -> Store:
        if self._store is None:
            self._store = get_store()
        return self._store

    @property
    def client(self) -> ParallelClient:
        if self._client is None:
            self._client = get_parallel_client()
        return self._client

    @property
    def is_complete(self) -> bool:
        return self.status in (TrackerStatus.COMPLETED, TrackerStatus.FAILED)

    def start(self) -> None:
        if self._tasks:
            return
        self.status = TrackerStatus.RUNNING_FILLING
        self.progress = 0.0
        self.live_updates = []
        self.result = None
        self.error = None
        self.run_status = None
        self.winner = None
        self._completed = False
        self._started_at = self._clock()
        self._queue = asyncio.Queue()
        self._tasks = [
            asyncio.create_task(self._watch_stream(), name=f"progress-stream-{self.run_id}"),
            asyncio.create_task(self._watch_store(), name=f"progress-feed-{self.run_id}"),
        ]
        log_service.log_event(event_type="progress_started", message="Progress tracking started", run_id=self.run_id)

    def tick(self) -> float:
        if self._completed or self.status not in (
            TrackerStatus.RUNNING_FILLING,
            TrackerStatus.RUNNING_FULL_WAITING,
        ):
            return self.progress
        self.progress = synthetic_progress(self._clock() - self._started_at, self.fill_duration)
        if self.progress >= 100.0 and self.status == TrackerStatus.RUNNING_FILLING:
            self.status = TrackerStatus.RUNNING_FULL_WAITING
        return self.progress

    async def complete(
        self, run_status: TaskStatus, *, output: ResearchOutput | None = None, source: str
    ) -> bool:
        """Record a terminal signal. Only the first call has any effect."""
        if self._completed:
            return False
        self.tick()
        self._completed = True
        self.winner = source
        self.run_status = run_status
        self._stop_other_watchers()

        if run_status == TaskStatus.COMPLETED and output is None:
            try:
                output = await self.client.fetch_output(self.run_id)
            except ProviderError as e:
                self.error = e.message

        if run_status == TaskStatus.COMPLETED and output is not None:
            self.result = output
        elif self.error is None:
            self.error = f"Research {run_status.value}"

        try:
            # Shielded so a local cancel never interrupts a claimed reconciliation.
            await asyncio.shield(
                reconcile(self.run_id, run_status, output=output, source=source, store=self.store)
            )
        except CopilotError as e:
            # Left unreconciled; the next webhook delivery or sweep retries.
            log_service.log_event(
                event_type="progress_reconcile_failed",
                message="Reconcile from progress tracker failed",
                run_id=self.run_id,
                source=source,
                error=e.message,
            )

        log_service.log_event(
            event_type="progress_terminal",
            message="Terminal status observed",
            run_id=self.run_id,
            run_status=run_status.value,
            source=source,
        )
        self._queue.put_nowait(None)
        return True

    async def cancel(self) -> None:
        """Stop watching locally. The provider task keeps running."""
        self._completed = True
        await self._stop_watchers()
        self.status = TrackerStatus.IDLE
        self.progress = 0.0
        self._queue.put_nowait(None)

    async def events(self) -> AsyncIterator[SSEEvent]:
        """Progress frames until the run is terminal or tracking is cancelled."""
        self.start()
        try:
            while True:
                try:
                    event = await asyncio.wait_for(self._queue.get(), timeout=self.tick_seconds)
                except asyncio.TimeoutError:
                    yield streaming.progress(self.run_id, self.tick(), self.status.value)
                    continue
                if event is None:
                    break
                yield event

            if self.status == TrackerStatus.IDLE:
                yield streaming.canceled(self.run_id)
                return

            async for event in self._snap():
                yield event
            if self.status == TrackerStatus.COMPLETED:
                yield streaming.research_complete(self.run_id, self.result.to_dict() if self.result else None)
            else:
                yield streaming.research_failed(
                    self.run_id, self.run_status.value if self.run_status else "unknown", self.error
                )
        finally:
            await self._stop_watchers()

    async def _snap(self) -> AsyncIterator[SSEEvent]:
        final = TrackerStatus.COMPLETED if self.result is not None else TrackerStatus.FAILED
        start = self.progress
        frames = max(int(self.snap_ms // SNAP_FRAME_MS), 1)
        for i in range(1, frames + 1):
            if self.snap_ms > 0:
                await asyncio.sleep(self.snap_ms / frames / 1000)
            if i == frames:
                self.progress = 100.0
                self.status = final
            else:
                self.progress = snap_progress(start, self.snap_ms * i / frames, self.snap_ms)
            yield streaming.progress(self.run_id, self.progress, self.status.value)

    # --- Watchers ---

    async def _watch_stream(self) -> None:
        last_event_id: str | None = None
        while not self._completed:
            try:
                async for frame in self.client.iter_events(self.run_id, last_event_id):
                    if frame.event_id:
                        last_event_id = frame.event_id
                        await self.store.update_last_event_id(self.run_id, frame.event_id)
                    await self._on_frame(frame)
                    if self._completed:
                        return
            except CopilotError as e:
                log_service.log_event(
                    event_type="progress_stream_error",
                    message="Event stream failed; reconnecting",
                    run_id=self.run_id,
                    error=e.message,
                    retry_in_seconds=self.reconnect_delay,
                )
            if self._completed:
                return
            await asyncio.sleep(self.reconnect_delay)

    async def _on_frame(self, frame: ProviderFrame) -> None:
        if frame.type == "task_run.state":
            try:
                run_status = parse_status(frame.run_status)
            except CopilotError:
                return
            if run_status.is_terminal:
                await self.complete(run_status, source="event_stream")
        elif frame.type.startswith("task_run.progress_"):
            message = frame.data.get("message")
            update = {
                "id": frame.event_id or uuid4().hex,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "type": frame.type,
                "message": message if isinstance(message, str) else json.dumps(frame.data),
                "data": frame.data,
            }
            self.live_updates.append(update)
            self._queue.put_nowait(streaming.live_update(self.run_id, update))

    async def _watch_store(self) -> None:
        while not self._completed:
            try:
                async for row in self.store.watch_task_run(self.run_id):
                    if self._completed:
                        return
                    run_status = TaskStatus(row["status"])
                    if not run_status.is_terminal:
                        continue
                    output = ResearchOutput.from_payload(row["result"]) if row.get("result") else None
                    await self.complete(run_status, output=output, source="change_feed")
                    return
            except CopilotError as e:
                log_service.log_event(
                    event_type="progress_feed_error",
                    message="Change feed failed; resubscribing",
                    run_id=self.run_id,
                    error=e.message,
                    retry_in_seconds=self.reconnect_delay,
                )
            if self._completed:
                return
            await asyncio.sleep(self.reconnect_delay)

    def _stop_other_watchers(self) -> None:
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()

    async def _stop_watchers(self) -> None:
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
