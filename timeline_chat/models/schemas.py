from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


DEFAULT_MAX_CONTEXT_ITEMS = 8
MAX_CONTEXT_ITEMS = 20
KNOWN_PROVIDERS = ("stub", "openai", "gemini")


def clamp_max_items(value: Any) -> int:
    try:
        candidate = int(value)
    except (TypeError, ValueError):
        candidate = DEFAULT_MAX_CONTEXT_ITEMS
    return min(max(candidate, 1), MAX_CONTEXT_ITEMS)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# --- Settings ---


class ChatSettings(_CamelModel):
    """Admin-configured chat settings, read once per request."""

    provider: str = "stub"
    model: str = "stub"
    temperature: float = 0.2
    system_prompt: str = Field(default="", alias="systemPrompt")
    max_context_items: int = Field(default=DEFAULT_MAX_CONTEXT_ITEMS, alias="maxContextItems")

    @field_validator("provider", mode="before")
    @classmethod
    def _known_provider(cls, value: Any) -> str:
        if isinstance(value, str) and value.strip().lower() in KNOWN_PROVIDERS:
            return value.strip().lower()
        return "stub"

    @field_validator("max_context_items", mode="before")
    @classmethod
    def _clamp_items(cls, value: Any) -> int:
        return clamp_max_items(value)

    @field_validator("temperature", mode="before")
    @classmethod
    def _temperature(cls, value: Any) -> float:
        try:
            return min(max(float(value), 0.0), 2.0)
        except (TypeError, ValueError):
            return 0.2


# --- Requests ---


class ChatRequest(_CamelModel):
    message: str = ""
    allow_originals: bool = Field(default=False, alias="allowOriginals")
    advisor_mode: bool = Field(default=False, alias="advisorMode")
    synthesis_mode: bool = Field(default=False, alias="synthesisMode")


# --- Responses ---


class Citation(_CamelModel):
    kind: Literal["summary", "selection_set", "run", "original"]
    title: str
    artifact_id: str | None = Field(default=None, alias="artifactId")
    date_iso: str | None = Field(default=None, alias="dateISO")
    selection_set_id: str | None = Field(default=None, alias="selectionSetId")
    run_id: str | None = Field(default=None, alias="runId")
    source: str | None = None
    source_id: str | None = Field(default=None, alias="sourceId")


class ProviderInfo(BaseModel):
    name: str
    model: str


class ChatResponse(_CamelModel):
    reply: str
    citations: list[Citation]
    suggested_actions: list[str]
    provider: ProviderInfo
    request_id: str = Field(alias="requestId")


class ErrorDetail(_CamelModel):
    code: str
    message: str
    details: dict[str, Any] | None = None
    retry_after_sec: int | None = Field(default=None, alias="retryAfterSec")


class ErrorResponse(_CamelModel):
    error: ErrorDetail
    error_code: str
    request_id: str = Field(alias="requestId")
