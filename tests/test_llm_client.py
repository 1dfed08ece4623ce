"""Tests for the LLM gateway providers."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from timeline_chat import llm_client
from timeline_chat.llm_client import LLMClient, call_stub
from timeline_chat.llm_errors import ProviderError
from timeline_chat.models.interfaces import LLMMessage, LLMRequest


def _request(**overrides) -> LLMRequest:
    values = dict(
        model="test-model",
        system_prompt="system rules",
        messages=[LLMMessage(role="user", content="context"), LLMMessage(role="user", content="question")],
        temperature=0.2,
        query="who called?",
        context_items=3,
    )
    values.update(overrides)
    return LLMRequest(**values)


@pytest.mark.asyncio
async def test_stub_echoes_query_and_context_count():
    response = await call_stub(_request(model="stub"))
    assert response.text == "[stub:stub] Received 'who called?'. Found 3 context items."


@pytest.mark.asyncio
async def test_stub_falls_back_to_last_user_message():
    response = await call_stub(_request(model="stub", query=""))
    assert "Received 'question'" in response.text


@pytest.mark.asyncio
async def test_unknown_provider_is_not_configured():
    with pytest.raises(ProviderError) as exc_info:
        await LLMClient().call("mystery", _request())
    assert exc_info.value.code == "not_configured"


class TestOpenAI:
    @pytest.mark.asyncio
    async def test_missing_key_is_not_configured(self, monkeypatch):
        monkeypatch.setattr(llm_client.settings, "openai_api_key", "")
        with pytest.raises(ProviderError) as exc_info:
            await LLMClient().call("openai", _request())
        assert exc_info.value.code == "not_configured"
        assert exc_info.value.provider == "openai"

    @pytest.mark.asyncio
    async def test_sends_system_prompt_and_reads_text(self, monkeypatch):
        monkeypatch.setattr(llm_client.settings, "openai_api_key", "sk-test")
        gateway = LLMClient()
        completion = MagicMock()
        completion.choices = [MagicMock(message=MagicMock(content="answer [1]"))]
        completion.usage = MagicMock(prompt_tokens=11, completion_tokens=4)
        fake = MagicMock()
        fake.chat.completions.create = AsyncMock(return_value=completion)
        gateway._openai = fake

        response = await gateway.call("openai", _request())

        assert response.text == "answer [1]"
        assert response.usage.input_tokens == 11
        kwargs = fake.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["temperature"] == 0.2
        assert kwargs["messages"][0] == {"role": "system", "content": "system rules"}
        assert [m["content"] for m in kwargs["messages"][1:]] == ["context", "question"]

    @pytest.mark.asyncio
    async def test_rate_limit_is_normalized(self, monkeypatch):
        monkeypatch.setattr(llm_client.settings, "openai_api_key", "sk-test")
        gateway = LLMClient()
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        error = openai.RateLimitError(
            "slow down",
            response=httpx.Response(429, headers={"retry-after": "7"}, request=request),
            body={"error": {"message": "slow down"}},
        )
        fake = MagicMock()
        fake.chat.completions.create = AsyncMock(side_effect=error)
        gateway._openai = fake

        with pytest.raises(ProviderError) as exc_info:
            await gateway.call("openai", _request())
        assert exc_info.value.code == "rate_limited"
        assert exc_info.value.retry_after_sec == 7

    @pytest.mark.asyncio
    async def test_timeout_is_upstream_timeout(self, monkeypatch):
        monkeypatch.setattr(llm_client.settings, "openai_api_key", "sk-test")
        gateway = LLMClient()
        fake = MagicMock()
        fake.chat.completions.create = AsyncMock(
            side_effect=openai.APITimeoutError(request=httpx.Request("POST", "https://api.openai.com"))
        )
        gateway._openai = fake

        with pytest.raises(ProviderError) as exc_info:
            await gateway.call("openai", _request())
        assert exc_info.value.code == "upstream_timeout"

    @pytest.mark.asyncio
    async def test_aclose_releases_sdk_client(self):
        gateway = LLMClient()
        fake = MagicMock()
        fake.close = AsyncMock()
        gateway._openai = fake

        await gateway.aclose()
        await gateway.aclose()

        fake.close.assert_awaited_once()
        assert gateway._openai is None


class TestGemini:
    @staticmethod
    def _patch_transport(monkeypatch, handler):
        real_client = httpx.AsyncClient

        def client_factory(**kwargs):
            return real_client(transport=httpx.MockTransport(handler), **kwargs)

        monkeypatch.setattr(llm_client.httpx, "AsyncClient", client_factory)

    @pytest.mark.asyncio
    async def test_request_shape_and_text(self, monkeypatch):
        monkeypatch.setattr(llm_client.settings, "gemini_api_key", "g-key")
        monkeypatch.setattr(llm_client.settings, "gemini_base_url", "https://gemini.test/v1beta/")
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "candidates": [{"content": {"parts": [{"text": "Hello "}, {"text": "there"}]}}],
                    "usageMetadata": {"promptTokenCount": 9, "candidatesTokenCount": 2},
                },
            )

        self._patch_transport(monkeypatch, handler)
        response = await LLMClient().call("gemini", _request())

        assert response.text == "Hello there"
        assert response.usage.output_tokens == 2
        assert seen["url"] == "https://gemini.test/v1beta/models/test-model:generateContent?key=g-key"
        assert seen["body"]["systemInstruction"] == {"parts": [{"text": "system rules"}]}
        assert seen["body"]["generationConfig"] == {"temperature": 0.2}
        assert seen["body"]["contents"][1] == {"role": "user", "parts": [{"text": "question"}]}

    @pytest.mark.asyncio
    async def test_http_error_is_normalized(self, monkeypatch):
        monkeypatch.setattr(llm_client.settings, "gemini_api_key", "g-key")

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"error": {"message": "API key invalid", "status": "PERMISSION_DENIED"}})

        self._patch_transport(monkeypatch, handler)
        with pytest.raises(ProviderError) as exc_info:
            await LLMClient().call("gemini", _request())
        assert exc_info.value.code == "forbidden"
        assert exc_info.value.details["providerMessage"] == "API key invalid"

    @pytest.mark.asyncio
    async def test_missing_key_is_not_configured(self, monkeypatch):
        monkeypatch.setattr(llm_client.settings, "gemini_api_key", "")
        with pytest.raises(ProviderError) as exc_info:
            await LLMClient().call("gemini", _request())
        assert exc_info.value.code == "not_configured"
