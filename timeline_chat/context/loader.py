"""Build the per-request context pack from the folder stores."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from timeline_chat.config import settings
from timeline_chat.context.matcher import (
    RECENT_PLACEHOLDER,
    is_recent_query,
    match_index_entry,
    match_summary_artifact,
    normalize_query,
    pick_snippet,
    score_selection_set,
)
from timeline_chat.context.packer import PackedContext, pack_context, truncate_text
from timeline_chat.context.ranker import (
    RankerConfig,
    parse_iso_timestamp,
    rank_candidates,
    to_candidate,
)
from timeline_chat.models.artifacts import SummaryArtifact, SummaryRef
from timeline_chat.models.context import ContextItem, RunItem, SelectionSetItem, SummaryItem
from timeline_chat.models.interfaces import ArtifactStore, MetadataStore
from timeline_chat.models.schemas import clamp_max_items
from timeline_chat.services.logger import log_store_operation, logger


MAX_META_SLOTS = 5
MIN_META_SLOTS = 2
MAX_SELECTION_SET_SLOTS = 2
SYNTHESIS_MIN_SUMMARIES = 2


@dataclass(slots=True)
class ContextPack:
    packed: PackedContext
    query: str
    recent_mode: bool
    used_index: bool
    total_considered: int
    matched_count: int
    fallback_used: bool = False

    @property
    def summary_count(self) -> int:
        return len(self.packed.source_index.summaries)


def meta_slot_budget(desired: int, *, reserved_summaries: int = 0) -> int:
    """Metadata slots for an item budget, leaving `reserved_summaries` slots free."""
    budget = min(MAX_META_SLOTS, max(MIN_META_SLOTS, desired // 4))
    if reserved_summaries:
        budget = min(budget, max(0, desired - reserved_summaries))
    return budget


def _timestamp_or_zero(value: str | None) -> float:
    return parse_iso_timestamp(value) or 0.0


def select_meta_items(
    selection_sets: list[SelectionSetItem],
    runs: list[RunItem],
    query: str,
    budget: int,
) -> list[ContextItem]:
    if budget <= 0:
        return []
    sorted_sets = sorted(
        selection_sets,
        key=lambda item: (
            score_selection_set(item, query),
            _timestamp_or_zero(item.updated_at_iso),
        ),
        reverse=True,
    )
    chosen_sets = sorted_sets[: min(MAX_SELECTION_SET_SLOTS, budget)]
    run_budget = max(0, budget - len(chosen_sets))
    chosen_runs = sorted(
        runs,
        key=lambda item: _timestamp_or_zero(item.finished_at_iso or item.started_at_iso),
        reverse=True,
    )[:run_budget]
    return [*chosen_sets, *chosen_runs][:budget]


def build_summary_item(artifact: SummaryArtifact, snippet: str, max_snippet_chars: int) -> SummaryItem:
    return SummaryItem(
        artifact_id=artifact.artifact_id,
        title=artifact.title,
        snippet=truncate_text(snippet, max_snippet_chars),
        source=artifact.source,
        source_id=artifact.source_id,
        date_iso=artifact.date_iso,
    )


def _order_refs(refs: list[SummaryRef], query: str, *, from_index: bool, recent_mode: bool) -> list[SummaryRef]:
    if not from_index:
        return list(refs)
    by_recency = sorted(refs, key=lambda ref: _timestamp_or_zero(ref.updated_at_iso), reverse=True)
    if recent_mode:
        return by_recency
    hits = [ref for ref in by_recency if match_index_entry(ref, query)]
    rest = [ref for ref in by_recency if not match_index_entry(ref, query)]
    return hits + rest


async def _gather_metadata(
    metadata_store: MetadataStore, folder: str
) -> tuple[list[SelectionSetItem], list[RunItem]]:
    results = await asyncio.gather(
        metadata_store.list_selection_sets(folder),
        metadata_store.list_runs(folder),
        return_exceptions=True,
    )
    lists: list[list[Any]] = []
    for name, result in zip(("selection_sets", "runs"), results):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            log_store_operation("list_metadata", name, "failed", error=str(result))
            lists.append([])
        else:
            lists.append(list(result))
    return lists[0], lists[1]


async def _read_artifacts(
    artifact_store: ArtifactStore,
    refs: list[SummaryRef],
    max_parallel: int,
) -> list[tuple[SummaryRef, SummaryArtifact]]:
    semaphore = asyncio.Semaphore(max(max_parallel, 1))

    async def read_one(ref: SummaryRef) -> SummaryArtifact | None:
        async with semaphore:
            return await artifact_store.get(ref.file_id)

    raw_results = await asyncio.gather(
        *(read_one(ref) for ref in refs),
        return_exceptions=True,
    )

    loaded: list[tuple[SummaryRef, SummaryArtifact]] = []
    for ref, result in zip(refs, raw_results):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            log_store_operation("read_summary", ref.file_id, "failed", error=str(result))
            continue
        if result is None:
            log_store_operation("read_summary", ref.file_id, "invalid", error="Unreadable summary artifact")
            continue
        loaded.append((ref, result))
    return loaded


async def build_context_pack(
    query_text: str,
    *,
    folder: str,
    artifact_store: ArtifactStore,
    metadata_store: MetadataStore,
    max_context_items: Any = None,
    synthesis_mode: bool = False,
    max_context_chars: int | None = None,
    max_snippet_chars: int | None = None,
    max_summary_reads: int | None = None,
    max_parallel_reads: int | None = None,
    ranker_config: RankerConfig | None = None,
    now: datetime | None = None,
) -> ContextPack:
    """Match, rank and pack summaries plus saved-search and run metadata.

    A blank query switches to recent mode, where every summary is a candidate
    ordered by recency. In synthesis mode, when nothing matches the query, the
    unmatched summaries become the candidates instead.
    """
    normalized = normalize_query(query_text)
    recent_mode = is_recent_query(normalized)
    query = RECENT_PLACEHOLDER if recent_mode else normalized
    desired = clamp_max_items(max_context_items)
    max_context_chars = max_context_chars or settings.max_context_chars
    max_snippet_chars = max_snippet_chars or settings.max_snippet_chars
    max_summary_reads = max_summary_reads or settings.store_max_summary_reads

    (selection_sets, runs), listing = await asyncio.gather(
        _gather_metadata(metadata_store, folder),
        artifact_store.list_summaries(folder),
    )

    refs = _order_refs(listing.refs, query, from_index=listing.from_index, recent_mode=recent_mode)
    loaded = await _read_artifacts(
        artifact_store,
        refs[:max_summary_reads],
        max_parallel_reads or settings.store_max_parallel_reads,
    )

    matched: list[SummaryItem] = []
    unmatched: list[SummaryItem] = []
    for ref, artifact in loaded:
        if recent_mode:
            matched.append(build_summary_item(artifact, pick_snippet(artifact, query), max_snippet_chars))
            continue
        full_text = match_summary_artifact(artifact, query)
        if full_text.matched or (listing.from_index and match_index_entry(ref, query)):
            snippet = full_text.snippet or pick_snippet(artifact, query)
            matched.append(build_summary_item(artifact, snippet, max_snippet_chars))
        else:
            unmatched.append(build_summary_item(artifact, pick_snippet(artifact, query), max_snippet_chars))

    if recent_mode:
        matched.sort(key=lambda item: _timestamp_or_zero(item.date_iso), reverse=True)

    fallback_used = False
    candidates = matched
    if synthesis_mode and not matched and unmatched:
        candidates = unmatched
        fallback_used = True
        logger.info(f"Synthesis fallback: using {len(unmatched)} unmatched summaries")

    reserved = 0
    if candidates:
        reserved = SYNTHESIS_MIN_SUMMARIES if synthesis_mode else 1
    meta_items = select_meta_items(
        selection_sets,
        runs,
        query,
        meta_slot_budget(desired, reserved_summaries=reserved),
    )
    summary_slots = max(0, desired - len(meta_items))
    ranked = rank_candidates(
        [to_candidate(item) for item in candidates],
        summary_slots,
        now=now,
        config=ranker_config,
    )

    packed = pack_context([*(c.item for c in ranked), *meta_items], max_context_chars)
    logger.debug(
        f"Context pack: query={query!r} considered={len(loaded)} matched={len(matched)} "
        f"packed={len(packed.source_index)} meta={len(meta_items)} index={listing.from_index}"
    )
    return ContextPack(
        packed=packed,
        query=query,
        recent_mode=recent_mode,
        used_index=listing.from_index,
        total_considered=len(loaded),
        matched_count=len(matched),
        fallback_used=fallback_used,
    )
