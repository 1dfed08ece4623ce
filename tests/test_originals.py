from __future__ import annotations

from datetime import datetime, timezone

import pytest

from timeline_chat.agents.originals import (
    ORIGINAL_TRUNCATION_MARKER,
    build_opened_record,
    open_originals,
    select_original_refs,
    truncate_original_text,
)
from timeline_chat.models.artifacts import OriginalRef
from timeline_chat.models.context import RunItem, SourceIndex, SummaryItem

from tests.fakes import FakeOriginalsFetcher


def _summary(n: int) -> SummaryItem:
    return SummaryItem(
        artifact_id=f"a{n}", title=f"Doc {n}", snippet="s", source="gmail", source_id=f"m{n}",
    )


def _ref(n: int) -> OriginalRef:
    return OriginalRef(artifact_id=f"a{n}", title=f"Doc {n}", source="gmail", source_id=f"m{n}")


def test_truncate_original_text():
    result = truncate_original_text("a" * 100, 40)
    assert result.truncated
    assert len(result.text) <= 40
    assert result.text.endswith(ORIGINAL_TRUNCATION_MARKER)
    assert truncate_original_text("short", 40).truncated is False


def test_select_refs_intersects_index_and_caps():
    run = RunItem(id="a9", action="run", started_at_iso="2026-01-01", status="success", text="r")
    index = SourceIndex([_summary(n) for n in range(1, 6)] + [run])
    refs = select_original_refs(["a2", "missing", "a2", "a9", "a1", "a4", "a5"], index, max_items=3)
    assert [ref.artifact_id for ref in refs] == ["a2", "a1", "a4"]


@pytest.mark.asyncio
async def test_fetch_failures_become_notes():
    fetcher = FakeOriginalsFetcher({"a1": "Original one", "a3": "Original three"})
    outcome = await open_originals([_ref(1), _ref(2), _ref(3)], fetcher)
    assert [o.artifact_id for o in outcome.opened] == ["a1", "a3"]
    assert [ref.artifact_id for ref in outcome.failed] == ["a2"]
    assert outcome.notes == ['Could not open the original for "Doc 2".']
    assert outcome.status == "partial"


@pytest.mark.asyncio
async def test_per_item_and_total_budgets():
    fetcher = FakeOriginalsFetcher({"a1": "x" * 100, "a2": "y" * 100, "a3": "z" * 100})
    outcome = await open_originals(
        [_ref(1), _ref(2), _ref(3)], fetcher, max_chars_per_item=80, max_chars_total=150,
    )
    total = sum(len(o.text) for o in outcome.opened)
    assert total <= 150
    assert all(len(o.text) <= 80 for o in outcome.opened)
    assert outcome.truncated_count == len(outcome.opened)
    assert any("truncated" in note for note in outcome.notes)


@pytest.mark.asyncio
async def test_status_failed_when_nothing_opens():
    outcome = await open_originals([_ref(1)], FakeOriginalsFetcher())
    assert outcome.opened == []
    assert outcome.status == "failed"


@pytest.mark.asyncio
async def test_opened_record():
    fetcher = FakeOriginalsFetcher({"a1": "text"})
    outcome = await open_originals([_ref(1)], fetcher)
    record = build_opened_record("req-1", datetime(2026, 1, 1, tzinfo=timezone.utc), outcome)
    assert record.request_id == "req-1"
    assert record.status == "success"
    assert [ref.source_id for ref in record.opened] == ["m1"]
    assert record.started_at_iso.startswith("2026-01-01")
