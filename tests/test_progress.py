from __future__ import annotations

import asyncio

import pytest

from research_copilot.errors import PersistenceError, ProviderError
from research_copilot.models.events import EventType, ProviderFrame
from research_copilot.models.research import ResearchOutput, TaskStatus
from research_copilot.services.progress import ProgressTracker, TrackerStatus, snap_progress, synthetic_progress
from research_copilot.services.reconciler import reconcile


class ScriptedEvents:
    """Stand-in for the Parallel client: each connection replays one script."""

    def __init__(self, *connections, output=None):
        self.connections = list(connections)
        self.output = output or ResearchOutput(summary="X", key_facts=["a"], sources=["s1"])
        self.cursors: list[str | None] = []
        self.fetches = 0

    async def iter_events(self, run_id, last_event_id=None):
        self.cursors.append(last_event_id)
        script = self.connections.pop(0) if self.connections else "hang"
        if script == "hang":
            await asyncio.Event().wait()
        for item in script:
            if isinstance(item, Exception):
                raise item
            yield item

    async def fetch_output(self, run_id):
        self.fetches += 1
        return self.output


def _tracker(store, client, **kwargs) -> ProgressTracker:
    return ProgressTracker(
        "run_1", store=store, client=client, tick_seconds=0.01, snap_ms=0, reconnect_delay=0, **kwargs
    )


async def _collect(tracker) -> list:
    return [event async for event in tracker.events()]


async def _session_with_run(store):
    session = await store.create_session("New Session")
    await store.create_task_run(session["id"], "run_1")
    return session


def test_synthetic_progress_fills_linearly_then_holds():
    assert synthetic_progress(0, 600) == 0.0
    assert synthetic_progress(300, 600) == 50.0
    assert synthetic_progress(600, 600) == 100.0
    assert synthetic_progress(5000, 600) == 100.0


def test_snap_progress_interpolates_to_full():
    assert snap_progress(40.0, 0, 400) == 40.0
    assert snap_progress(40.0, 200, 400) == 70.0
    assert snap_progress(40.0, 400, 400) == 100.0
    assert snap_progress(40.0, 10, 0) == 100.0


def test_tick_moves_to_full_waiting_after_fill():
    now = [0.0]
    tracker = ProgressTracker("run_1", fill_duration=10, clock=lambda: now[0])
    tracker.status = TrackerStatus.RUNNING_FILLING

    now[0] = 5.0
    assert tracker.tick() == 50.0
    assert tracker.status == TrackerStatus.RUNNING_FILLING

    now[0] = 12.0
    assert tracker.tick() == 100.0
    assert tracker.status == TrackerStatus.RUNNING_FULL_WAITING


@pytest.mark.asyncio
async def test_event_stream_terminal_frame_completes_and_reconciles(memory_store):
    session = await _session_with_run(memory_store)
    client = ScriptedEvents(
        [
            ProviderFrame(data={"type": "task_run.progress_msg.exec_status", "message": "Reading sources"}, event_id="e1"),
            ProviderFrame(data={"type": "task_run.state", "run": {"status": "completed"}}, event_id="e2"),
        ]
    )
    tracker = _tracker(memory_store, client)

    events = await asyncio.wait_for(_collect(tracker), timeout=2)

    kinds = [e.event for e in events]
    assert EventType.LIVE_UPDATE in kinds
    assert kinds[-1] == EventType.RESEARCH_COMPLETE
    assert events[-1].data["result"]["summary"] == "X"
    assert tracker.status == TrackerStatus.COMPLETED
    assert tracker.progress == 100.0
    assert tracker.winner == "event_stream"
    assert tracker.live_updates[0]["message"] == "Reading sources"
    assert (await memory_store.get_task_run("run_1"))["last_event_id"] == "e2"

    messages = await memory_store.get_messages(session["id"])
    assert [m["role"] for m in messages] == ["research"]


@pytest.mark.asyncio
async def test_first_terminal_signal_wins(memory_store):
    session = await _session_with_run(memory_store)
    tracker = _tracker(memory_store, ScriptedEvents("hang"))

    collector = asyncio.create_task(_collect(tracker))
    await asyncio.sleep(0.05)
    # Webhook path reconciles first; the change feed then reports it.
    await reconcile("run_1", "failed", store=memory_store)
    events = await asyncio.wait_for(collector, timeout=2)

    assert tracker.winner == "change_feed"
    assert events[-1].event == EventType.RESEARCH_FAILED
    assert events[-1].data["run_status"] == "failed"
    assert await tracker.complete(TaskStatus.COMPLETED, source="event_stream") is False
    assert tracker.status == TrackerStatus.FAILED
    assert len(await memory_store.get_messages(session["id"])) == 1


@pytest.mark.asyncio
async def test_stream_errors_reconnect_with_cursor(memory_store):
    await _session_with_run(memory_store)
    client = ScriptedEvents(
        [
            ProviderFrame(data={"type": "task_run.progress_stats"}, event_id="e7"),
            ProviderError("stream reset", provider="parallel", cause="network"),
        ],
        [ProviderFrame(data={"type": "task_run.state", "run": {"status": "completed"}})],
    )
    tracker = _tracker(memory_store, client)

    events = await asyncio.wait_for(_collect(tracker), timeout=2)

    assert client.cursors == [None, "e7"]
    assert events[-1].event == EventType.RESEARCH_COMPLETE


@pytest.mark.asyncio
async def test_cancel_resets_locally_without_touching_run(memory_store):
    await _session_with_run(memory_store)
    tracker = _tracker(memory_store, ScriptedEvents("hang"))

    collector = asyncio.create_task(_collect(tracker))
    await asyncio.sleep(0.05)
    await tracker.cancel()
    events = await asyncio.wait_for(collector, timeout=2)

    assert events[-1].event == EventType.CANCELED
    assert tracker.status == TrackerStatus.IDLE
    assert tracker.progress == 0.0
    assert (await memory_store.get_task_run("run_1"))["status"] == "queued"


class FlakyFeedStore:
    """Delegates to a real store; the first change-feed subscription fails."""

    def __init__(self, store):
        self._store = store
        self.watch_calls = 0

    def __getattr__(self, name):
        return getattr(self._store, name)

    def watch_task_run(self, provider_run_id):
        self.watch_calls += 1
        if self.watch_calls == 1:
            return self._failing_feed()
        return self._store.watch_task_run(provider_run_id)

    async def _failing_feed(self):
        raise PersistenceError("connection dropped", operation="select", table="task_runs")
        yield


@pytest.mark.asyncio
async def test_change_feed_errors_resubscribe(memory_store):
    session = await _session_with_run(memory_store)
    store = FlakyFeedStore(memory_store)
    tracker = _tracker(store, ScriptedEvents("hang"))

    collector = asyncio.create_task(_collect(tracker))
    await asyncio.sleep(0.05)
    await reconcile("run_1", "failed", store=memory_store)
    events = await asyncio.wait_for(collector, timeout=2)

    assert store.watch_calls == 2
    assert tracker.winner == "change_feed"
    assert events[-1].event == EventType.RESEARCH_FAILED
    assert len(await memory_store.get_messages(session["id"])) == 1
