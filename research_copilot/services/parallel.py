"""Parallel Task API client: create runs, fetch results, read the event stream."""
from __future__ import annotations

import json
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterable, AsyncIterator

import httpx

from research_copilot.config import settings
from research_copilot.errors import ConfigurationError, ProviderError
from research_copilot.models.events import ProviderFrame
from research_copilot.models.research import ResearchOutput
from research_copilot.services import logger as log_service

PROVIDER = "parallel"

OUTPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "summary": {"type": "string", "description": "Concise answer to the research objective."},
        "key_facts": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Most important findings, one per entry.",
        },
        "sources": {
            "type": "array",
            "items": {"type": "string"},
            "description": "URLs or citations backing the findings.",
        },
    },
    "required": ["summary", "key_facts", "sources"],
    "additionalProperties": False,
}


class ParallelClient:
    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.parallel.ai",
        beta_header: str = "webhook-2025-08-12,events-sse-2025-07-24",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.beta_header = beta_header
        self.timeout = timeout
        self._transport = transport

    def _headers(self, **extra: str) -> dict[str, str]:
        return {"x-api-key": self.api_key, "parallel-beta": self.beta_header, **extra}

    def _client(self, *, timeout: httpx.Timeout | float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout if timeout is None else timeout,
            transport=self._transport,
        )

    async def _request_json(self, method: str, path: str, *, operation: str, run_id: str | None = None, **kwargs: Any) -> Any:
        t0 = time.monotonic()

        def _fail(cause: str, message: str, http_status: int | None = None) -> ProviderError:
            log_service.log_provider_call(
                PROVIDER,
                operation,
                "error",
                duration_ms=int((time.monotonic() - t0) * 1000),
                run_id=run_id,
                http_status=http_status,
                error=f"{cause}: {message}",
            )
            return ProviderError(message, provider=PROVIDER, cause=cause, upstream_status=http_status)

        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise _fail("network", f"Network error calling Parallel API: {e}") from e

        if response.status_code >= 400:
            raise _fail(
                "http_status",
                f"Parallel API error: {response.status_code} - {response.text}",
                response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise _fail("invalid_body", f"Invalid JSON response from Parallel API: {e}", response.status_code) from e

        log_service.log_provider_call(
            PROVIDER,
            operation,
            "success",
            duration_ms=int((time.monotonic() - t0) * 1000),
            run_id=run_id or (payload.get("run_id") if isinstance(payload, dict) else None),
            http_status=response.status_code,
        )
        return payload

    async def create_task_run(
        self,
        input: str,
        *,
        processor: str,
        webhook_url: str,
        output_schema: dict[str, Any] | None = None,
    ) -> str:
        """Submit a research task and return its run id."""
        body: dict[str, Any] = {
            "input": input,
            "processor": processor,
            "enable_events": True,
            "webhook": {"url": webhook_url, "event_types": ["task_run.status"]},
        }
        if output_schema is not None:
            body["task_spec"] = {"output_schema": {"type": "json", "json_schema": output_schema}}

        payload = await self._request_json(
            "POST",
            "/v1/tasks/runs",
            operation="create_task_run",
            json=body,
            headers=self._headers(**{"Content-Type": "application/json"}),
        )
        run_id = payload.get("run_id") if isinstance(payload, dict) else None
        if not isinstance(run_id, str) or not run_id:
            log_service.log_provider_call(
                PROVIDER, "create_task_run", "error", error="missing_run_id: response has no run_id"
            )
            raise ProviderError(
                "No run_id in Parallel API response", provider=PROVIDER, cause="missing_run_id"
            )
        return run_id

    async def get_task_run(self, run_id: str) -> dict[str, Any]:
        payload = await self._request_json(
            "GET", f"/v1/tasks/runs/{run_id}", operation="get_task_run", run_id=run_id, headers=self._headers()
        )
        if not isinstance(payload, dict):
            raise ProviderError("Unexpected task run payload", provider=PROVIDER, cause="invalid_body")
        return payload

    async def get_task_result(self, run_id: str) -> dict[str, Any]:
        """Raw ``{run, output}`` payload of a finished run."""
        payload = await self._request_json(
            "GET",
            f"/v1/tasks/runs/{run_id}/result",
            operation="get_task_result",
            run_id=run_id,
            headers=self._headers(),
        )
        if not isinstance(payload, dict):
            raise ProviderError("Unexpected task result payload", provider=PROVIDER, cause="invalid_body")
        return payload

    async def fetch_output(self, run_id: str) -> ResearchOutput:
        return ResearchOutput.from_payload(extract_output(await self.get_task_result(run_id)))

    @asynccontextmanager
    async def open_event_stream(
        self, run_id: str, last_event_id: str | None = None
    ) -> AsyncIterator[httpx.Response]:
        """Open the run's server-sent event stream.

        Non-2xx answers raise ``ProviderError`` before anything is yielded so
        callers can still reply with a plain error.
        """
        headers = self._headers(Accept="text/event-stream")
        params = {"last_event_id": last_event_id} if last_event_id else None
        timeout = httpx.Timeout(self.timeout, read=None)
        t0 = time.monotonic()
        try:
            async with self._client(timeout=timeout) as client:
                async with client.stream(
                    "GET", f"/v1beta/tasks/runs/{run_id}/events", headers=headers, params=params
                ) as response:
                    if response.status_code >= 400:
                        detail = (await response.aread()).decode("utf-8", errors="replace")
                        log_service.log_provider_call(
                            PROVIDER,
                            "stream_events",
                            "error",
                            duration_ms=int((time.monotonic() - t0) * 1000),
                            run_id=run_id,
                            http_status=response.status_code,
                            error=detail[:500],
                        )
                        raise ProviderError(
                            f"Parallel API error: {response.status_code} - {detail}",
                            provider=PROVIDER,
                            cause="http_status",
                            upstream_status=response.status_code,
                        )
                    log_service.log_provider_call(
                        PROVIDER,
                        "stream_events",
                        "success",
                        duration_ms=int((time.monotonic() - t0) * 1000),
                        run_id=run_id,
                        http_status=response.status_code,
                    )
                    yield response
        except httpx.HTTPError as e:
            log_service.log_provider_call(
                PROVIDER, "stream_events", "error", run_id=run_id, error=f"network: {e}"
            )
            raise ProviderError(
                f"Network error reading Parallel event stream: {e}", provider=PROVIDER, cause="network"
            ) from e

    async def iter_events(
        self, run_id: str, last_event_id: str | None = None
    ) -> AsyncIterator[ProviderFrame]:
        async with self.open_event_stream(run_id, last_event_id) as response:
            async for frame in parse_sse_frames(response.aiter_lines()):
                yield frame


def extract_output(result: dict[str, Any]) -> Any:
    """Return the structured output, unwrapping ``output.content`` when present."""
    output = result.get("output", result)
    if isinstance(output, dict) and "content" in output:
        return output["content"]
    return output


async def parse_sse_frames(lines: AsyncIterable[str]) -> AsyncIterator[ProviderFrame]:
    """Decode ``text/event-stream`` lines into frames with JSON ``data``.

    Frames whose data is not a JSON object are skipped.
    """
    event: str | None = None
    event_id: str | None = None
    data_lines: list[str] = []

    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data_lines:
                frame = _decode_frame("\n".join(data_lines), event, event_id)
                if frame is not None:
                    yield frame
            event, event_id, data_lines = None, None, []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data_lines.append(value)
        elif name == "event":
            event = value
        elif name == "id":
            event_id = value

    if data_lines:
        frame = _decode_frame("\n".join(data_lines), event, event_id)
        if frame is not None:
            yield frame


def _decode_frame(data: str, event: str | None, event_id: str | None) -> ProviderFrame | None:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        log_service.logger.debug("Skipping non-JSON event frame: %s", data[:200])
        return None
    if not isinstance(payload, dict):
        return None
    return ProviderFrame(data=payload, event=event, event_id=event_id)


_client: ParallelClient | None = None


def get_parallel_client() -> ParallelClient:
    global _client
    if _client is None:
        if not settings.parallel_api_key:
            raise ConfigurationError("PARALLEL_API_KEY not configured")
        _client = ParallelClient(
            settings.parallel_api_key,
            base_url=settings.parallel_base_url,
            beta_header=settings.parallel_beta_header,
            timeout=settings.parallel_timeout_seconds,
        )
    return _client


def set_parallel_client(client: ParallelClient | None) -> None:
    global _client
    _client = client
