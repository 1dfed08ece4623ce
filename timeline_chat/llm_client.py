"""LLM gateway: stub, OpenAI-compatible and Gemini providers behind one call."""
from __future__ import annotations

import time
from typing import Any

import httpx

from timeline_chat.config import settings
from timeline_chat.llm_errors import ProviderError, normalize_http_error
from timeline_chat.models.interfaces import LLMMessage, LLMRequest, LLMResponse, LLMUsage
from timeline_chat.services.logger import log_llm_call, logger


def _last_user_message(messages: list[LLMMessage]) -> str:
    for message in reversed(messages):
        if message.role == "user" and message.content.strip():
            return message.content.strip()
    return ""


async def call_stub(request: LLMRequest) -> LLMResponse:
    """Deterministic echo used when no real provider is configured."""
    received = request.query.strip() or _last_user_message(request.messages) or "Hello"
    return LLMResponse(
        text=f"[stub:{request.model}] Received '{received}'. Found {request.context_items} context items."
    )


def _not_configured(provider: str) -> ProviderError:
    return ProviderError(
        code="not_configured",
        status=400,
        provider=provider,
        message="Provider not configured.",
    )


class LLMClient:
    """Dispatches an LLMRequest to a provider and logs every call."""

    def __init__(self, *, timeout_seconds: float | None = None):
        self._timeout = timeout_seconds or settings.llm_timeout_seconds
        self._openai: Any | None = None

    def _openai_client(self) -> Any:
        from openai import AsyncOpenAI

        if self._openai is None:
            base_url = settings.openai_base_url.strip() or "https://api.openai.com/v1"
            self._openai = AsyncOpenAI(
                api_key=settings.openai_api_key,
                base_url=base_url,
                timeout=self._timeout,
                max_retries=0,
            )
        return self._openai

    async def aclose(self) -> None:
        if self._openai is not None:
            await self._openai.close()
            self._openai = None

    async def call_openai(self, request: LLMRequest) -> LLMResponse:
        import openai

        if not settings.openai_api_key:
            raise _not_configured("openai")

        messages: list[dict[str, str]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend({"role": m.role, "content": m.content} for m in request.messages)

        kwargs: dict[str, Any] = {"model": request.model, "messages": messages}
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature

        try:
            response = await self._openai_client().chat.completions.create(**kwargs)
        except openai.APITimeoutError as exc:
            raise ProviderError(
                code="upstream_timeout", status=504, provider="openai",
                message="Provider request timed out.",
            ) from exc
        except openai.APIStatusError as exc:
            raise normalize_http_error(
                provider="openai",
                status=exc.status_code,
                response_json=exc.body,
                response_text=exc.message,
                headers=exc.response.headers,
            ) from exc
        except openai.APIConnectionError as exc:
            raise ProviderError(
                code="upstream_error", status=502, provider="openai",
                message="Provider request failed.",
            ) from exc

        choices = getattr(response, "choices", None) or []
        text = ""
        if choices:
            text = getattr(choices[0].message, "content", None) or ""
        usage = getattr(response, "usage", None)
        return LLMResponse(
            text=text,
            usage=LLMUsage(
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            ),
        )

    async def call_gemini(self, request: LLMRequest) -> LLMResponse:
        if not settings.gemini_api_key:
            raise _not_configured("gemini")

        body: dict[str, Any] = {
            "contents": [
                {
                    "role": "model" if m.role == "assistant" else "user",
                    "parts": [{"text": m.content}],
                }
                for m in request.messages
            ],
        }
        if request.system_prompt:
            body["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}
        if request.temperature is not None:
            body["generationConfig"] = {"temperature": request.temperature}

        base_url = settings.gemini_base_url.rstrip("/")
        url = f"{base_url}/models/{request.model}:generateContent"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as http:
                response = await http.post(
                    url,
                    params={"key": settings.gemini_api_key},
                    json=body,
                )
        except httpx.TimeoutException as exc:
            raise ProviderError(
                code="upstream_timeout", status=504, provider="gemini",
                message="Provider request timed out.",
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                code="upstream_error", status=502, provider="gemini",
                message="Provider request failed.",
            ) from exc

        if response.status_code >= 400:
            try:
                response_json = response.json()
                response_text = None
            except ValueError:
                response_json = None
                response_text = response.text
            raise normalize_http_error(
                provider="gemini",
                status=response.status_code,
                response_json=response_json,
                response_text=response_text,
                headers=response.headers,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(
                code="bad_output", status=502, provider="gemini",
                message="Provider returned invalid output.",
            ) from exc

        candidates = payload.get("candidates") or []
        parts = ((candidates[0].get("content") or {}).get("parts") or []) if candidates else []
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        usage = payload.get("usageMetadata") or {}
        return LLMResponse(
            text=text,
            usage=LLMUsage(
                input_tokens=usage.get("promptTokenCount", 0) or 0,
                output_tokens=usage.get("candidatesTokenCount", 0) or 0,
            ),
        )

    async def call(self, provider: str, request: LLMRequest, *, caller: str = "chat") -> LLMResponse:
        started = time.perf_counter()
        try:
            if provider == "stub":
                response = await call_stub(request)
            elif provider == "openai":
                response = await self.call_openai(request)
            elif provider == "gemini":
                response = await self.call_gemini(request)
            else:
                raise _not_configured(provider)
        except ProviderError as exc:
            log_llm_call(
                provider=provider,
                model=request.model,
                caller=caller,
                duration_ms=int((time.perf_counter() - started) * 1000),
                status=exc.code,
                error=exc.message,
            )
            raise

        log_llm_call(
            provider=provider,
            model=request.model,
            caller=caller,
            duration_ms=int((time.perf_counter() - started) * 1000),
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        if not response.text.strip():
            logger.warning(f"Empty LLM output from {provider}/{request.model} ({caller})")
        return response


_client: LLMClient | None = None


def client() -> LLMClient:
    """Get or create the shared LLM gateway."""
    global _client
    if _client is None:
        _client = LLMClient()
    return _client
