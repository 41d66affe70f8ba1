from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from research_copilot.errors import MissingRunId, NotFoundError, PersistenceError, ValidationError
from research_copilot.models.research import ResearchOutput, TaskStatus
from research_copilot.services.reconciler import (
    compute_signature,
    format_outcome,
    parse_webhook,
    reconcile,
    sweep_stale_runs,
    verify_signature,
)


async def _session_with_run(store, run_id="run_42"):
    session = await store.create_session("New Session")
    await store.create_task_run(session["id"], run_id, brief_text="brief")
    return session


# --- Signatures ---


def test_verify_signature_accepts_any_candidate_and_v1_prefix():
    body = b'{"run_id": "run_1", "status": "completed"}'
    good = compute_signature("whsec", "msg_1", "1726800000", body)

    assert verify_signature("whsec", body, webhook_id="msg_1", timestamp="1726800000", signature_header=good)
    assert verify_signature(
        "whsec", body, webhook_id="msg_1", timestamp="1726800000", signature_header=f"v1,bogus v1,{good}"
    )


def test_verify_signature_rejects_tampering():
    body = b'{"run_id": "run_1", "status": "completed"}'
    good = compute_signature("whsec", "msg_1", "1726800000", body)

    assert not verify_signature(
        "whsec", body + b" ", webhook_id="msg_1", timestamp="1726800000", signature_header=good
    )
    assert not verify_signature("whsec", body, webhook_id="msg_2", timestamp="1726800000", signature_header=good)
    assert not verify_signature("other", body, webhook_id="msg_1", timestamp="1726800000", signature_header=good)
    assert not verify_signature("whsec", body, webhook_id="msg_1", timestamp="1726800000", signature_header="")


# --- Parsing ---


def test_parse_webhook_flat_and_enveloped():
    event = parse_webhook(b'{"run_id": "r1", "status": "completed"}')
    assert (event.run_id, event.status) == ("r1", TaskStatus.COMPLETED)
    enveloped = json.dumps({"type": "task_run.status", "data": {"run_id": "r2", "status": "failed"}})
    event = parse_webhook(enveloped.encode())
    assert (event.run_id, event.status) == ("r2", TaskStatus.FAILED)
    assert parse_webhook(b'{"run_id": "r3", "status": "cancelled"}').status == TaskStatus.CANCELED


@pytest.mark.parametrize("raw_status", ["cancelling", "action_required", None])
def test_parse_webhook_leaves_untracked_statuses_unset(raw_status):
    event = parse_webhook(json.dumps({"run_id": "r4", "status": raw_status}).encode())

    assert event.run_id == "r4"
    assert event.status is None
    assert event.raw_status == raw_status


@pytest.mark.parametrize(
    "body,error",
    [
        (b"not json", ValidationError),
        (b"[]", ValidationError),
        (b'{"status": "completed"}', MissingRunId),
        (b'{"run_id": "", "status": "completed"}', MissingRunId),
    ],
)
def test_parse_webhook_rejects_bad_bodies(body, error):
    with pytest.raises(error):
        parse_webhook(body)


# --- Formatting ---


def test_format_outcome_sections():
    content = format_outcome(
        "run_42", ResearchOutput(summary="X", key_facts=["a", "b"], sources=["s1"])
    )

    assert content == (
        "✅ **Research Complete**\n\n"
        "## Summary\nX\n\n"
        "## Key Facts\n1. a\n2. b\n\n"
        "## Sources\n1. s1\n\n"
        "*Task ID: run_42*"
    )


def test_format_outcome_skips_empty_sections():
    content = format_outcome("run_1", ResearchOutput(summary="only"))

    assert "## Key Facts" not in content
    assert "## Sources" not in content
    assert content.endswith("*Task ID: run_1*")


# --- Reconciliation ---


@pytest.mark.asyncio
async def test_two_completed_signals_emit_one_outcome(memory_store, fake_parallel):
    api = fake_parallel()
    session = await _session_with_run(memory_store)

    first = await reconcile("run_42", "completed")
    second = await reconcile("run_42", "completed")

    assert not first.duplicate
    assert second.duplicate
    messages = await memory_store.get_messages(session["id"])
    assert [m["role"] for m in messages] == ["research"]
    assert messages[0]["metadata"]["results"]["key_facts"] == ["a", "b"]
    assert api.paths().count("/v1/tasks/runs/run_42/result") == 1
    assert (await memory_store.get_task_run("run_42"))["result"]["summary"] == "X"


@pytest.mark.asyncio
async def test_failed_signal_writes_error_message_without_fetch(memory_store, fake_parallel):
    api = fake_parallel()
    session = await _session_with_run(memory_store)

    outcome = await reconcile("run_42", "failed")

    assert outcome.status == TaskStatus.FAILED
    [message] = await memory_store.get_messages(session["id"])
    assert message["role"] == "system"
    assert "Research Failed" in message["content"]
    assert "run_42" in message["content"]
    assert message["metadata"] == {"run_id": "run_42", "status": "failed", "error": True}
    assert api.requests == []


@pytest.mark.asyncio
async def test_terminal_run_keeps_first_status(memory_store, fake_parallel):
    fake_parallel()
    session = await _session_with_run(memory_store)

    await reconcile("run_42", "canceled")
    late = await reconcile("run_42", "completed")

    assert late.duplicate
    assert late.status == TaskStatus.CANCELED
    assert (await memory_store.get_task_run("run_42"))["status"] == "canceled"
    assert len(await memory_store.get_messages(session["id"])) == 1


@pytest.mark.asyncio
async def test_non_terminal_signal_only_updates_status(memory_store):
    session = await _session_with_run(memory_store)

    outcome = await reconcile("run_42", "running")

    assert outcome.status == TaskStatus.RUNNING
    assert await memory_store.get_messages(session["id"]) == []
    assert (await memory_store.get_task_run("run_42"))["reconciled_at"] is None


@pytest.mark.asyncio
async def test_unknown_run_is_not_found(memory_store):
    with pytest.raises(NotFoundError):
        await reconcile("nope", "completed")


@pytest.mark.asyncio
async def test_unretrievable_result_becomes_non_retryable_system_message(memory_store, fake_parallel):
    fake_parallel(result_status=502)
    session = await _session_with_run(memory_store)

    await reconcile("run_42", "completed")

    [message] = await memory_store.get_messages(session["id"])
    assert message["role"] == "system"
    assert message["metadata"]["error"] is True
    assert message["metadata"]["retryable"] is False


@pytest.mark.asyncio
async def test_failure_after_claim_releases_it_for_redelivery(memory_store, fake_parallel):
    fake_parallel()
    session = await _session_with_run(memory_store)

    with patch.object(
        memory_store,
        "create_message",
        new=AsyncMock(side_effect=PersistenceError("insert failed", operation="insert", table="messages")),
    ):
        with pytest.raises(PersistenceError):
            await reconcile("run_42", "completed")

    assert (await memory_store.get_task_run("run_42"))["reconciled_at"] is None

    retry = await reconcile("run_42", "completed")

    assert not retry.duplicate
    assert len(await memory_store.get_messages(session["id"])) == 1


@pytest.mark.asyncio
async def test_embedded_output_skips_fetch(memory_store, fake_parallel):
    api = fake_parallel()
    session = await _session_with_run(memory_store)

    await reconcile("run_42", "completed", output=ResearchOutput(summary="inline"), source="change_feed")

    assert api.requests == []
    [message] = await memory_store.get_messages(session["id"])
    assert "## Summary\ninline" in message["content"]


# --- Sweep ---


@pytest.mark.asyncio
async def test_sweep_expires_only_old_active_runs_once(memory_store):
    session = await memory_store.create_session("New Session")
    for run_id in ("run_old", "run_new", "run_done"):
        await memory_store.create_task_run(session["id"], run_id)
    await memory_store.update_task_status("run_done", "completed")
    long_ago = datetime.now(timezone.utc) - timedelta(hours=2)
    memory_store._task_runs["run_old"]["created_at"] = long_ago
    memory_store._task_runs["run_done"]["created_at"] = long_ago

    assert await sweep_stale_runs() == ["run_old"]
    assert await sweep_stale_runs() == []

    assert (await memory_store.get_task_run("run_old"))["status"] == "expired"
    assert (await memory_store.get_task_run("run_new"))["status"] == "queued"
    [message] = await memory_store.get_messages(session["id"])
    assert message["role"] == "system"
    assert message["metadata"] == {"run_id": "run_old", "status": "expired", "error": True}


@pytest.mark.asyncio
async def test_sweep_keeps_going_when_one_run_fails(memory_store):
    session = await _session_with_run(memory_store, "run_old")
    stale = [{"provider_run_id": "run_gone"}, {"provider_run_id": "run_old"}]

    with patch.object(memory_store, "list_stale_task_runs", new=AsyncMock(return_value=stale)):
        assert await sweep_stale_runs() == ["run_old"]

    assert (await memory_store.get_task_run("run_old"))["status"] == "expired"
    assert len(await memory_store.get_messages(session["id"])) == 1


@pytest.mark.asyncio
async def test_completion_after_expiry_is_logged_as_late(memory_store, fake_parallel):
    session = await _session_with_run(memory_store)
    api = fake_parallel()
    await reconcile("run_42", TaskStatus.EXPIRED, source="sweep")

    with patch("research_copilot.services.reconciler.log_service.log_event") as log_event:
        outcome = await reconcile("run_42", "completed")

    assert outcome.duplicate is True
    assert outcome.status == TaskStatus.EXPIRED
    late = [c.kwargs for c in log_event.call_args_list if c.kwargs["event_type"] == "late_terminal_signal"]
    assert late == [
        {
            "event_type": "late_terminal_signal",
            "message": "Terminal signal arrived after the run was already closed",
            "run_id": "run_42",
            "status": "completed",
            "stored_status": "expired",
            "source": "webhook",
        }
    ]
    assert api.requests == []
    assert len(await memory_store.get_messages(session["id"])) == 1
