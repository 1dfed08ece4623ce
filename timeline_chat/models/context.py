from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Iterable, Literal, Union


RunAction = Literal["run", "summarize", "chat_originals_opened"]
RunStatus = Literal["success", "partial_success", "failed"]


@dataclass(frozen=True, slots=True)
class SummaryItem:
    artifact_id: str
    title: str
    snippet: str
    source: str
    source_id: str
    date_iso: str | None = None
    kind: Literal["summary"] = "summary"

    @property
    def body(self) -> str:
        return self.snippet

    def with_body(self, body: str) -> "SummaryItem":
        return replace(self, snippet=body)


@dataclass(frozen=True, slots=True)
class SelectionSetItem:
    id: str
    title: str
    source: str
    query: str
    updated_at_iso: str
    text: str
    kind: Literal["selection_set"] = "selection_set"

    @property
    def body(self) -> str:
        return self.text

    def with_body(self, body: str) -> "SelectionSetItem":
        return replace(self, text=body)


@dataclass(frozen=True, slots=True)
class RunItem:
    id: str
    action: RunAction
    started_at_iso: str
    status: RunStatus
    text: str
    selection_set_id: str | None = None
    selection_set_title: str | None = None
    finished_at_iso: str | None = None
    found_count: int | None = None
    processed_count: int | None = None
    failed_count: int | None = None
    request_ids: tuple[str, ...] = ()
    kind: Literal["run"] = "run"

    @property
    def body(self) -> str:
        return self.text

    @property
    def label(self) -> str:
        if self.selection_set_title:
            return f"{self.action} • {self.selection_set_title}"
        return self.action

    def with_body(self, body: str) -> "RunItem":
        return replace(self, text=body)


ContextItem = Union[SummaryItem, SelectionSetItem, RunItem]


@dataclass(frozen=True, slots=True)
class RankedCandidate:
    item: SummaryItem
    artifact_key: str
    recency_timestamp: float | None = None


class SourceIndex:
    """1-based view over the packed context items of one request."""

    __slots__ = ("_items",)

    def __init__(self, items: Iterable[ContextItem] = ()):
        self._items: tuple[ContextItem, ...] = tuple(items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(self._items)

    def __getitem__(self, number: int) -> ContextItem:
        if not self.contains(number):
            raise IndexError(f"Source {number} is outside [1, {len(self._items)}]")
        return self._items[number - 1]

    def contains(self, number: Any) -> bool:
        return (
            isinstance(number, int)
            and not isinstance(number, bool)
            and 1 <= number <= len(self._items)
        )

    @property
    def items(self) -> list[ContextItem]:
        return list(self._items)

    @property
    def summaries(self) -> list[SummaryItem]:
        return [item for item in self._items if isinstance(item, SummaryItem)]

    def find_summary(self, artifact_id: str) -> SummaryItem | None:
        for item in self._items:
            if isinstance(item, SummaryItem) and item.artifact_id == artifact_id:
                return item
        return None


def citation_for(item: ContextItem) -> dict[str, Any]:
    """Citation payload mirroring the item's kind."""
    if isinstance(item, SummaryItem):
        citation: dict[str, Any] = {
            "kind": "summary",
            "artifact_id": item.artifact_id,
            "title": item.title,
        }
        if item.date_iso:
            citation["date_iso"] = item.date_iso
        return citation
    if isinstance(item, SelectionSetItem):
        return {"kind": "selection_set", "selection_set_id": item.id, "title": item.title}
    return {"kind": "run", "run_id": item.id, "title": item.label}
