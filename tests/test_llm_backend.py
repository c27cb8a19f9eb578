"""Tests for the OpenAI-compatible completion backend."""

from __future__ import annotations

import json

import httpx
import pytest

from qa_gen.config import ProviderConfig
from qa_gen.llm.backend import (
    OpenAICompatibleBackend,
    TransportError,
    _parse_sse_line,
    create_backend,
)


def _sse(*frames: str) -> bytes:
    return "".join(f"data: {f}\n\n" for f in frames).encode()


def _delta(text: str) -> str:
    return json.dumps({"choices": [{"delta": {"content": text}}]})


def _backend(handler) -> OpenAICompatibleBackend:
    return OpenAICompatibleBackend(
        base_url="https://llm.test/v1",
        model="test/model",
        api_key="sk-test",
        extra_headers={"X-Title": "qa-gen"},
        transport=httpx.MockTransport(handler),
    )


# --- Non-streaming ---


class TestComplete:
    @pytest.mark.asyncio
    async def test_returns_text_and_usage(self) -> None:
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["title"] = request.headers.get("x-title")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "model": "test/model-2024",
                "choices": [{"message": {"role": "assistant", "content": "[]"}}],
                "usage": {"prompt_tokens": 5, "completion_tokens": 1, "total_tokens": 6},
            })

        backend = _backend(handler)
        result = await backend.complete("sys", "user", temperature=0.3, max_tokens=100)
        await backend.close()

        assert result.text == "[]"
        assert result.model == "test/model-2024"
        assert result.usage["total_tokens"] == 6
        assert seen["url"] == "https://llm.test/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["title"] == "qa-gen"
        assert seen["body"]["stream"] is False
        assert seen["body"]["messages"][0] == {"role": "system", "content": "sys"}
        assert seen["body"]["model"] == "test/model"

    @pytest.mark.asyncio
    async def test_http_error_status(self) -> None:
        backend = _backend(lambda r: httpx.Response(429, text="rate limited"))
        with pytest.raises(TransportError) as exc_info:
            await backend.complete("sys", "user")
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_connection_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        backend = _backend(handler)
        with pytest.raises(TransportError):
            await backend.complete("sys", "user")

    @pytest.mark.asyncio
    async def test_malformed_body(self) -> None:
        backend = _backend(lambda r: httpx.Response(200, json={"unexpected": True}))
        with pytest.raises(TransportError):
            await backend.complete("sys", "user")


# --- Streaming ---


class TestCompleteStream:
    @pytest.mark.asyncio
    async def test_yields_content_deltas(self) -> None:
        body = _sse(
            json.dumps({"choices": [{"delta": {"role": "assistant"}}]}),
            _delta("[{"),
            _delta('"a": 1}]'),
            "[DONE]",
        )
        backend = _backend(lambda r: httpx.Response(
            200, content=body, headers={"content-type": "text/event-stream"},
        ))
        fragments = [f async for f in backend.complete_stream("sys", "user")]
        assert fragments == ["[{", '"a": 1}]']

    @pytest.mark.asyncio
    async def test_keepalive_comments_ignored(self) -> None:
        body = b": OPENROUTER PROCESSING\n\n" + _sse(_delta("x"), "[DONE]")
        backend = _backend(lambda r: httpx.Response(200, content=body))
        assert [f async for f in backend.complete_stream("sys", "user")] == ["x"]

    @pytest.mark.asyncio
    async def test_error_frame_raises(self) -> None:
        body = _sse(_delta("x"), json.dumps({"error": {"message": "overloaded"}}))
        backend = _backend(lambda r: httpx.Response(200, content=body))
        with pytest.raises(TransportError, match="overloaded"):
            async for _ in backend.complete_stream("sys", "user"):
                pass

    @pytest.mark.asyncio
    async def test_http_error_status(self) -> None:
        backend = _backend(lambda r: httpx.Response(500, text="upstream down"))
        with pytest.raises(TransportError) as exc_info:
            async for _ in backend.complete_stream("sys", "user"):
                pass
        assert exc_info.value.status_code == 500


class TestParseSseLine:
    def test_done(self) -> None:
        assert _parse_sse_line("data: [DONE]") is None

    def test_non_data_line(self) -> None:
        assert _parse_sse_line("event: ping") == ""

    def test_bad_json(self) -> None:
        with pytest.raises(TransportError):
            _parse_sse_line("data: {not json")


# --- Factory ---


class TestCreateBackend:
    def test_openrouter_headers_and_key(self, monkeypatch) -> None:
        monkeypatch.setenv("OPENROUTER_API_KEY", "or-key")
        backend = create_backend(ProviderConfig())
        assert isinstance(backend, OpenAICompatibleBackend)
        assert backend.model == "google/gemini-2.0-flash-001"
        assert backend._headers["Authorization"] == "Bearer or-key"
        assert "X-Title" in backend._headers

    def test_ollama_default_url_no_key(self, monkeypatch) -> None:
        monkeypatch.delenv("OLLAMA_API_KEY", raising=False)
        provider = ProviderConfig(name="ollama", api_key_env="OLLAMA_API_KEY", model="llama3.1")
        backend = create_backend(provider)
        assert backend._base_url == "http://localhost:11434/v1"
        assert "Authorization" not in backend._headers
        assert "X-Title" not in backend._headers

    def test_openai_explicit_base_url_kept(self, monkeypatch) -> None:
        monkeypatch.setenv("OPENAI_API_KEY", "sk")
        provider = ProviderConfig(
            name="openai", base_url="https://proxy.example.com/v1",
            api_key_env="OPENAI_API_KEY", model="gpt-4o-mini",
        )
        backend = create_backend(provider)
        assert backend._base_url == "https://proxy.example.com/v1"
