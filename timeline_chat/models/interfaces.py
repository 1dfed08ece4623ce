from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Protocol

from timeline_chat.models.artifacts import (
    OpenedOriginal,
    OriginalRef,
    OriginalsOpenedRecord,
    SummaryArtifact,
    SummaryListing,
)
from timeline_chat.models.context import RunItem, SelectionSetItem
from timeline_chat.models.schemas import ChatSettings


ProviderName = Literal["stub", "openai", "gemini"]


@dataclass(slots=True)
class LLMMessage:
    role: Literal["system", "user", "assistant"]
    content: str


@dataclass(slots=True)
class LLMRequest:
    model: str
    system_prompt: str
    messages: list[LLMMessage]
    temperature: float | None = None
    # Request metadata; never sent to a provider.
    query: str = ""
    context_items: int = 0


@dataclass(slots=True)
class LLMUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(slots=True)
class LLMResponse:
    text: str
    usage: LLMUsage = field(default_factory=LLMUsage)


class ArtifactStore(Protocol):
    async def list_summaries(self, folder: str) -> SummaryListing: ...

    async def get(self, file_id: str) -> SummaryArtifact | None: ...


class MetadataStore(Protocol):
    async def list_selection_sets(self, folder: str) -> list[SelectionSetItem]: ...

    async def list_runs(self, folder: str) -> list[RunItem]: ...

    async def record_originals_opened(self, folder: str, record: OriginalsOpenedRecord) -> None: ...


class OriginalsFetcher(Protocol):
    async def fetch(self, ref: OriginalRef) -> OpenedOriginal: ...


class LLMGateway(Protocol):
    async def call(self, provider: str, request: LLMRequest, *, caller: str = "chat") -> LLMResponse: ...


class SettingsStore(Protocol):
    async def read(self, folder: str) -> ChatSettings: ...
