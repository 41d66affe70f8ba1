from __future__ import annotations

import json
from unittest.mock import patch

import httpx
import pytest

from research_copilot import llm_client
from research_copilot.config import settings
from research_copilot.models.research import ChatReply
from research_copilot.services import parallel
from research_copilot.services import store as store_module
from research_copilot.services.local_store import MemoryStore
from research_copilot.services.parallel import ParallelClient

BRIEF = {
    "objective": "Compare EU AI Act obligations for general purpose model providers",
    "constraints": ["Published after 2023"],
    "target_sources": ["official websites", "academic papers"],
    "disallowed_sources": ["social media"],
    "timebox_minutes": 15,
    "expected_output_fields": ["summary", "key_facts", "sources"],
    "summary": "EU AI Act obligations for model providers",
}


class FakeChatClient:
    """Scripted chat backend; exceptions in ``replies`` are raised in order."""

    provider = "fake"
    model = "fake-model"

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    async def generate(self, turns, **kwargs):
        self.calls.append((list(turns), kwargs))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return ChatReply(content=reply, tokens=7, model=self.model)


class FakeParallelApi:
    """Minimal Parallel Task API served through ``httpx.MockTransport``."""

    def __init__(self, run_id="run_42", output=None, create_status=200, result_status=200):
        self.run_id = run_id
        self.output = output if output is not None else {"summary": "X", "key_facts": ["a", "b"], "sources": ["s1"]}
        self.create_status = create_status
        self.result_status = result_status
        self.requests: list[httpx.Request] = []

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST" and path == "/v1/tasks/runs":
            if self.create_status >= 400:
                return httpx.Response(self.create_status, text="upstream unavailable")
            return httpx.Response(200, json={"run_id": self.run_id, "status": "queued"})
        if request.method == "GET" and path.endswith("/result"):
            if self.result_status >= 400:
                return httpx.Response(self.result_status, text="result unavailable")
            return httpx.Response(
                200,
                json={"run": {"run_id": self.run_id, "status": "completed"}, "output": {"content": self.output}},
            )
        return httpx.Response(404, json={"error": "not found"})

    def client(self) -> ParallelClient:
        return ParallelClient("test-key", base_url="https://parallel.test", transport=httpx.MockTransport(self.handler))

    def create_body(self) -> dict:
        creates = [r for r in self.requests if r.method == "POST"]
        return json.loads(creates[-1].content)


@pytest.fixture
def memory_store():
    store = MemoryStore()
    store_module.set_store(store)
    yield store
    store_module.set_store(None)


@pytest.fixture
def fake_chat():
    def install(*replies):
        fake = FakeChatClient(*replies)
        llm_client._client = fake
        return fake

    yield install
    llm_client._client = None


@pytest.fixture
def fake_parallel():
    def install(**kwargs):
        api = FakeParallelApi(**kwargs)
        parallel.set_parallel_client(api.client())
        return api

    yield install
    parallel.set_parallel_client(None)


@pytest.fixture
def brief_payload():
    return dict(BRIEF)


@pytest.fixture
def brief_json():
    return json.dumps(BRIEF)


@pytest.fixture(autouse=True)
def unsigned_webhooks():
    with patch.object(settings, "parallel_webhook_secret", ""):
        yield
