from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from research_copilot.config import settings
from research_copilot.errors import NotFoundError, PersistenceError, ProviderError
from research_copilot.models.research import ResearchBrief
from research_copilot.services.dispatcher import dispatch_research


@pytest.mark.asyncio
async def test_dispatch_persists_run_then_announces_it(memory_store, fake_parallel, brief_payload):
    api = fake_parallel(run_id="run_42")
    session = await memory_store.create_session("New Session")

    with patch.object(settings, "public_base_url", "https://copilot.test"):
        result = await dispatch_research(session["id"], ResearchBrief(**brief_payload))

    assert result.run_id == "run_42"
    assert result.sse_url == "https://copilot.test/api/research-stream/run_42"
    assert result.status == "queued"

    body = api.create_body()
    assert body["input"] == brief_payload["objective"]
    assert body["webhook"]["url"] == "https://copilot.test/api/parallel-webhook"

    task_run = await memory_store.get_task_run("run_42")
    assert task_run["status"] == "queued"
    assert task_run["brief_text"] == brief_payload["summary"]

    [message] = await memory_store.get_messages(session["id"])
    assert message["role"] == "research"
    assert brief_payload["objective"] in message["content"]
    assert "**Estimated Time:** 15 minutes" in message["content"]
    assert message["content"].endswith("*Task ID: run_42*")
    assert message["metadata"] == {"run_id": "run_42", "status": "started", "sse_url": result.sse_url}


@pytest.mark.asyncio
async def test_unknown_session_fails_before_provider_call(memory_store, fake_parallel, brief_payload):
    api = fake_parallel()

    with pytest.raises(NotFoundError):
        await dispatch_research("missing", ResearchBrief(**brief_payload))

    assert api.requests == []


@pytest.mark.asyncio
async def test_provider_failure_records_retryable_system_message(memory_store, fake_parallel, brief_payload):
    fake_parallel(create_status=503)
    session = await memory_store.create_session("New Session")

    with patch("research_copilot.services.dispatcher.log_service.log_event") as log_event:
        with pytest.raises(ProviderError) as exc_info:
            await dispatch_research(session["id"], ResearchBrief(**brief_payload))

    assert exc_info.value.cause == "http_status"
    failure_logs = [c for c in log_event.call_args_list if c.kwargs.get("event_type") == "dispatch_failed"]
    assert failure_logs[0].kwargs["cause"] == "http_status"

    [message] = await memory_store.get_messages(session["id"])
    assert message["role"] == "system"
    assert message["metadata"] == {"error": True, "retryable": True}
    assert memory_store._task_runs == {}


@pytest.mark.asyncio
async def test_schema_can_be_disabled(memory_store, fake_parallel, brief_payload):
    api = fake_parallel()
    session = await memory_store.create_session("New Session")

    with patch.object(settings, "parallel_output_schema_enabled", False):
        await dispatch_research(session["id"], ResearchBrief(**brief_payload))

    assert "task_spec" not in api.create_body()


@pytest.mark.asyncio
async def test_started_message_failure_does_not_fail_dispatch(memory_store, fake_parallel, brief_payload):
    fake_parallel(run_id="run_7")
    session = await memory_store.create_session("New Session")

    with patch.object(
        memory_store,
        "create_message",
        new=AsyncMock(side_effect=PersistenceError("insert failed", operation="insert", table="messages")),
    ):
        result = await dispatch_research(session["id"], ResearchBrief(**brief_payload))

    assert result.run_id == "run_7"
    assert (await memory_store.get_task_run("run_7"))["status"] == "queued"
