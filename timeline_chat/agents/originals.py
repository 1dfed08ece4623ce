"""Open original documents for the sources the router asked about."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Literal

from timeline_chat.agents.prompting import message
from timeline_chat.config import settings
from timeline_chat.models.artifacts import OpenedOriginal, OriginalRef, OriginalsOpenedRecord
from timeline_chat.models.context import SourceIndex
from timeline_chat.models.interfaces import OriginalsFetcher
from timeline_chat.services.logger import logger


ORIGINAL_TRUNCATION_MARKER = "...[truncated]"


@dataclass(slots=True)
class TruncatedText:
    text: str
    truncated: bool


@dataclass(slots=True)
class OriginalsOutcome:
    opened: list[OpenedOriginal] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    failed: list[OriginalRef] = field(default_factory=list)
    truncated_count: int = 0

    @property
    def status(self) -> Literal["success", "partial", "failed"]:
        if not self.opened:
            return "failed"
        return "partial" if self.failed else "success"


def truncate_original_text(value: str, max_chars: int) -> TruncatedText:
    if len(value) <= max_chars:
        return TruncatedText(text=value, truncated=False)
    keep = max(0, max_chars - len(ORIGINAL_TRUNCATION_MARKER) - 1)
    return TruncatedText(text=f"{value[:keep].rstrip()}{ORIGINAL_TRUNCATION_MARKER}", truncated=True)


def select_original_refs(
    requested_ids: list[str],
    source_index: SourceIndex,
    max_items: int | None = None,
) -> list[OriginalRef]:
    """Requested ids that name a packed summary, in request order."""
    max_items = max_items if max_items is not None else settings.originals_max_items
    refs: list[OriginalRef] = []
    seen: set[str] = set()
    for artifact_id in requested_ids:
        if artifact_id in seen:
            continue
        seen.add(artifact_id)
        item = source_index.find_summary(artifact_id)
        if item is None:
            continue
        refs.append(
            OriginalRef(
                artifact_id=item.artifact_id,
                title=item.title,
                source=item.source,  # type: ignore[arg-type]
                source_id=item.source_id,
            )
        )
        if len(refs) >= max_items:
            break
    return refs


async def open_originals(
    refs: list[OriginalRef],
    fetcher: OriginalsFetcher,
    *,
    max_chars_per_item: int | None = None,
    max_chars_total: int | None = None,
) -> OriginalsOutcome:
    """Fetch originals one at a time so the cumulative budget is exact.

    A failed fetch becomes a user-visible note and does not stop the rest.
    """
    per_item = max_chars_per_item or settings.originals_max_chars_per_item
    remaining = max_chars_total or settings.originals_max_chars_total
    outcome = OriginalsOutcome()

    for ref in refs:
        if remaining <= len(ORIGINAL_TRUNCATION_MARKER):
            outcome.notes.append(message("original_budget_note", title=ref.title))
            continue
        try:
            fetched = await fetcher.fetch(ref)
        except Exception as exc:
            logger.warning(f"Original fetch failed for {ref.source}:{ref.source_id}: {exc}")
            outcome.failed.append(ref)
            outcome.notes.append(message("original_fetch_failed_note", title=ref.title))
            continue

        clipped = truncate_original_text(fetched.text, min(per_item, remaining))
        remaining -= len(clipped.text)
        truncated = fetched.truncated or clipped.truncated
        if truncated:
            outcome.truncated_count += 1
            outcome.notes.append(message("original_truncated_note", title=ref.title))
        outcome.opened.append(replace(fetched, text=clipped.text, truncated=truncated))

    return outcome


def build_opened_record(
    request_id: str,
    started_at: datetime,
    outcome: OriginalsOutcome,
) -> OriginalsOpenedRecord:
    return OriginalsOpenedRecord(
        request_id=request_id,
        started_at_iso=started_at.isoformat(),
        finished_at_iso=datetime.now(timezone.utc).isoformat(),
        opened=[
            OriginalRef(
                artifact_id=item.artifact_id,
                title=item.title,
                source=item.source,
                source_id=item.source_id,
            )
            for item in outcome.opened
        ],
        truncated_count=outcome.truncated_count,
        status=outcome.status,
    )
