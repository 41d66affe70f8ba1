"""Chat-completion client factory for Gemini and OpenRouter.

Both backends take the provider-neutral two-party transcript
(``ChatTurn(role="user" | "model", text)``) and return a ``ChatReply``.
"""
from __future__ import annotations

import time
from typing import Any, Protocol

import httpx

from research_copilot.config import settings
from research_copilot.errors import ConfigurationError, NoResponseGenerated, ProviderError
from research_copilot.models.research import ChatReply, ChatTurn
from research_copilot.services import logger as log_service


class ChatClient(Protocol):
    provider: str
    model: str

    async def generate(
        self,
        turns: list[ChatTurn],
        *,
        caller: str,
        temperature: float,
        max_output_tokens: int,
        top_k: int | None = None,
        top_p: float | None = None,
    ) -> ChatReply: ...


class GeminiClient:
    """REST ``generateContent`` client."""

    provider = "gemini"

    def __init__(
        self,
        api_key: str,
        *,
        model: str,
        base_url: str,
        timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    @staticmethod
    def to_contents(turns: list[ChatTurn]) -> list[dict[str, Any]]:
        return [{"role": t.role, "parts": [{"text": t.text}]} for t in turns]

    @staticmethod
    def _extract_text(payload: dict[str, Any]) -> str | None:
        candidates = payload.get("candidates") or []
        if not candidates or not isinstance(candidates[0], dict):
            return None
        parts = (candidates[0].get("content") or {}).get("parts") or []
        texts = [p.get("text") for p in parts if isinstance(p, dict) and p.get("text")]
        return "".join(texts) or None

    async def _post(self, url: str, body: dict[str, Any]) -> httpx.Response:
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}
        if self._http_client is not None:
            return await self._http_client.post(url, json=body, headers=headers)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, json=body, headers=headers)

    async def generate(
        self,
        turns: list[ChatTurn],
        *,
        caller: str,
        temperature: float,
        max_output_tokens: int,
        top_k: int | None = None,
        top_p: float | None = None,
    ) -> ChatReply:
        generation_config: dict[str, Any] = {
            "temperature": temperature,
            "maxOutputTokens": max_output_tokens,
        }
        if top_k is not None:
            generation_config["topK"] = top_k
        if top_p is not None:
            generation_config["topP"] = top_p
        body = {"contents": self.to_contents(turns), "generationConfig": generation_config}
        url = f"{self.base_url}/models/{self.model}:generateContent"

        t0 = time.monotonic()
        try:
            response = await self._post(url, body)
        except httpx.HTTPError as e:
            self._log(caller, t0, status="error", error=f"network: {e}")
            raise ProviderError(
                f"Network error calling Gemini API: {e}", provider=self.provider, cause="network"
            ) from e

        if response.status_code >= 400:
            self._log(caller, t0, status="error", error=f"http {response.status_code}")
            raise ProviderError(
                f"Gemini API error: {response.status_code} - {response.text}",
                provider=self.provider,
                cause="http_status",
                upstream_status=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            self._log(caller, t0, status="error", error="invalid json body")
            raise ProviderError(
                f"Error parsing Gemini API response: {e}", provider=self.provider, cause="invalid_body"
            ) from e

        text = self._extract_text(payload) if isinstance(payload, dict) else None
        tokens = int(((payload or {}).get("usageMetadata") or {}).get("totalTokenCount") or 0)
        if not text:
            self._log(caller, t0, tokens=tokens, status="error", error="no response generated")
            raise NoResponseGenerated(provider=self.provider)

        self._log(caller, t0, tokens=tokens)
        return ChatReply(content=text, tokens=tokens, model=self.model)

    def _log(self, caller: str, t0: float, *, tokens: int = 0, status: str = "success", error: str | None = None) -> None:
        log_service.log_llm_call(
            model=self.model,
            caller=caller,
            tokens=tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
            status=status,
            error=error,
        )


class OpenRouterClient:
    """OpenAI-compatible chat completions through OpenRouter."""

    provider = "openrouter"

    def __init__(self, openai_client: Any, *, model: str):
        self._client = openai_client
        self.model = model

    @staticmethod
    def to_openai_messages(turns: list[ChatTurn]) -> list[dict[str, str]]:
        return [
            {"role": "assistant" if t.role == "model" else "user", "content": t.text}
            for t in turns
        ]

    async def generate(
        self,
        turns: list[ChatTurn],
        *,
        caller: str,
        temperature: float,
        max_output_tokens: int,
        top_k: int | None = None,
        top_p: float | None = None,
    ) -> ChatReply:
        import openai

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": self.to_openai_messages(turns),
            "max_tokens": max_output_tokens,
            "temperature": temperature,
        }
        if top_p is not None:
            kwargs["top_p"] = top_p

        t0 = time.monotonic()
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except openai.APIConnectionError as e:
            self._log(caller, t0, status="error", error=f"network: {e}")
            raise ProviderError(
                f"Network error calling OpenRouter: {e}", provider=self.provider, cause="network"
            ) from e
        except openai.APIStatusError as e:
            self._log(caller, t0, status="error", error=f"http {e.status_code}")
            raise ProviderError(
                f"OpenRouter error: {e.status_code} - {e.message}",
                provider=self.provider,
                cause="http_status",
                upstream_status=e.status_code,
            ) from e

        choices = getattr(response, "choices", None) or []
        text = getattr(choices[0].message, "content", None) if choices else None
        usage = getattr(response, "usage", None)
        tokens = int(getattr(usage, "total_tokens", 0) or 0)
        if not text:
            self._log(caller, t0, tokens=tokens, status="error", error="no response generated")
            raise NoResponseGenerated(provider=self.provider)

        self._log(caller, t0, tokens=tokens)
        return ChatReply(content=text, tokens=tokens, model=self.model)

    def _log(self, caller: str, t0: float, *, tokens: int = 0, status: str = "success", error: str | None = None) -> None:
        log_service.log_llm_call(
            model=self.model,
            caller=caller,
            tokens=tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
            status=status,
            error=error,
        )


def get_client() -> ChatClient:
    """Build the chat client selected by ``CHAT_PROVIDER``."""
    provider = settings.chat_provider.lower().strip()
    if provider == "gemini":
        if not settings.gemini_api_key:
            raise ConfigurationError("GEMINI_API_KEY not configured")
        return GeminiClient(
            settings.gemini_api_key,
            model=settings.gemini_model,
            base_url=settings.gemini_base_url,
            timeout=settings.llm_timeout_seconds,
        )
    if provider == "openrouter":
        if not settings.openrouter_api_key:
            raise ConfigurationError("OPENROUTER_API_KEY not configured")
        from openai import AsyncOpenAI

        openai_client = AsyncOpenAI(
            api_key=settings.openrouter_api_key,
            base_url=settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1",
            timeout=settings.llm_timeout_seconds,
        )
        return OpenRouterClient(openai_client, model=settings.openrouter_model)
    raise ConfigurationError(f"Unsupported CHAT_PROVIDER: {settings.chat_provider}")


def get_model() -> str:
    """Model id of the configured chat provider."""
    if settings.chat_provider.lower().strip() == "openrouter":
        return settings.openrouter_model
    return settings.gemini_model


_client: ChatClient | None = None


def client() -> ChatClient:
    """Get or create the chat client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client
