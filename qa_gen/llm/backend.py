"""LLM completion client for OpenAI-compatible chat endpoints.

OpenRouter, OpenAI and Ollama (``/v1``) all speak the same
``/chat/completions`` protocol, so one httpx-based backend serves them.
Provider selection is passed in explicitly as a :class:`ProviderConfig`.
"""

from __future__ import annotations

import abc
import json
import logging
import os
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx

from qa_gen.config import ProviderConfig

logger = logging.getLogger(__name__)

_DEFAULT_BASE_URLS = {
    "openrouter": "https://openrouter.ai/api/v1",
    "openai": "https://api.openai.com/v1",
    "ollama": "http://localhost:11434/v1",
}


class TransportError(Exception):
    """The completion service call failed outright."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


@dataclass
class Completion:
    """Result of a non-streaming completion call."""

    text: str
    model: str
    usage: dict[str, int] | None = None


class LLMBackend(abc.ABC):
    """Abstract base class for completion backends."""

    model: str

    @abc.abstractmethod
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 8000,
    ) -> Completion:
        """Run one non-streaming completion and return the full text."""

    @abc.abstractmethod
    def complete_stream(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str | None = None,
        temperature: float = 0.4,
        max_tokens: int = 12000,
    ) -> AsyncIterator[str]:
        """Yield text fragments as the model produces them.

        Cancelling the consuming task closes the underlying connection.
        """

    @abc.abstractmethod
    async def close(self) -> None:
        """Clean up resources."""


class OpenAICompatibleBackend(LLMBackend):
    """Chat-completions client over httpx (JSON and SSE streaming)."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str | None = None,
        extra_headers: dict[str, str] | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self.model = model
        self._timeout = timeout
        self._transport = transport
        self._headers = {"Content-Type": "application/json", **(extra_headers or {})}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    def _payload(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str | None,
        temperature: float,
        max_tokens: int,
        stream: bool,
    ) -> dict[str, Any]:
        return {
            "model": model or self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": stream,
        }

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 8000,
    ) -> Completion:
        payload = self._payload(system_prompt, user_prompt, model, temperature, max_tokens, False)
        try:
            resp = await self._get_client().post("/chat/completions", json=payload)
        except httpx.HTTPError as e:
            raise TransportError(f"Completion request failed: {e}") from e

        if resp.status_code >= 400:
            raise TransportError(
                f"Completion HTTP error {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
            text = data["choices"][0]["message"].get("content") or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise TransportError(f"Malformed completion response: {e}") from e

        usage = data.get("usage")
        return Completion(
            text=text,
            model=data.get("model") or payload["model"],
            usage=usage if isinstance(usage, dict) else None,
        )

    async def complete_stream(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str | None = None,
        temperature: float = 0.4,
        max_tokens: int = 12000,
    ) -> AsyncIterator[str]:
        payload = self._payload(system_prompt, user_prompt, model, temperature, max_tokens, True)
        try:
            async with self._get_client().stream("POST", "/chat/completions", json=payload) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    raise TransportError(
                        f"Completion HTTP error {resp.status_code}: {body[:200]}",
                        status_code=resp.status_code,
                    )
                async for line in resp.aiter_lines():
                    delta = _parse_sse_line(line)
                    if delta is None:
                        break
                    if delta:
                        yield delta
        except httpx.HTTPError as e:
            raise TransportError(f"Completion stream failed: {e}") from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _parse_sse_line(line: str) -> str | None:
    """Extract the content delta from one SSE line.

    Returns ``None`` at the ``[DONE]`` sentinel and ``""`` for lines that
    carry no text (comments, keep-alives, role-only deltas).
    """
    line = line.strip()
    if not line.startswith("data:"):
        return ""
    data = line[len("data:"):].strip()
    if data == "[DONE]":
        return None
    try:
        frame = json.loads(data)
    except json.JSONDecodeError as e:
        raise TransportError(f"Malformed stream frame: {data[:100]}") from e
    if "error" in frame:
        raise TransportError(f"Completion stream error: {frame['error']}")
    choices = frame.get("choices") or []
    if not choices:
        return ""
    return (choices[0].get("delta") or {}).get("content") or ""


def create_backend(
    provider: ProviderConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> LLMBackend:
    """Create the completion backend described by *provider*.

    The API key is read from the environment variable named in
    ``provider.api_key_env``; Ollama needs none.
    """
    base_url = provider.base_url
    if provider.name in _DEFAULT_BASE_URLS and provider.name != "openrouter" \
            and base_url == _DEFAULT_BASE_URLS["openrouter"]:
        base_url = _DEFAULT_BASE_URLS[provider.name]

    api_key = os.environ.get(provider.api_key_env) if provider.api_key_env else None
    if not api_key and provider.name != "ollama":
        logger.warning(
            "No API key in $%s; requests to %s will likely be rejected.",
            provider.api_key_env, base_url,
        )

    headers = provider.extra_headers if provider.name == "openrouter" else {}
    return OpenAICompatibleBackend(
        base_url=base_url,
        model=provider.model,
        api_key=api_key,
        extra_headers=headers,
        timeout=provider.timeout,
        transport=transport,
    )
