from __future__ import annotations

import pytest

from timeline_chat.context.packer import TRUNCATION_MARKER, format_header, pack_context, truncate_text
from timeline_chat.models.context import RunItem, SelectionSetItem, SummaryItem


def _summary(n: int, body: str, date_iso: str | None = "2026-02-01") -> SummaryItem:
    return SummaryItem(
        artifact_id=f"a{n}",
        title=f"Summary {n}",
        snippet=body,
        source="gmail",
        source_id=f"s{n}",
        date_iso=date_iso,
    )


def test_truncate_text_respects_limit():
    text = truncate_text("word " * 100, 50)
    assert len(text) <= 50
    assert text.endswith(TRUNCATION_MARKER)
    assert truncate_text("short", 50) == "short"


def test_headers_by_kind():
    saved = SelectionSetItem(
        id="s1", title="Landlord", source="gmail", query="from:landlord",
        updated_at_iso="2026-01-02", text="Saved search",
    )
    run = RunItem(
        id="r1", action="summarize", started_at_iso="2026-01-03", status="success",
        text="Run", selection_set_title="Landlord", finished_at_iso="2026-01-04",
    )
    assert format_header(_summary(1, "x"), 1) == "SOURCE 1 (SUMMARY): Summary 1 [2026-02-01]"
    assert format_header(_summary(1, "x", date_iso=None), 2) == "SOURCE 2 (SUMMARY): Summary 1"
    assert format_header(saved, 3) == "SOURCE 3 (SAVED SEARCH): Landlord [2026-01-02]"
    assert format_header(run, 4) == "SOURCE 4 (RUN): summarize • Landlord [2026-01-04]"


def test_packed_text_never_exceeds_budget():
    items = [_summary(n, "lorem ipsum " * 80) for n in range(1, 9)]
    for budget in (40, 120, 500, 1500, 4000):
        packed = pack_context(items, budget)
        assert len(packed.text) <= budget


def test_headers_are_never_truncated():
    items = [_summary(n, "lorem ipsum " * 80) for n in range(1, 9)]
    packed = pack_context(items, 900)
    for number, item in enumerate(packed.source_index, start=1):
        assert format_header(item, number) in packed.text


def test_source_index_matches_packed_blocks():
    items = [_summary(n, f"body {n}") for n in range(1, 4)]
    packed = pack_context(items, 12000)
    assert len(packed.source_index) == 3
    assert packed.source_index[2].artifact_id == "a2"
    assert "SOURCE 3 (SUMMARY)" in packed.text
    assert not packed.source_index.contains(4)


def test_truncated_body_is_carried_into_source_index():
    packed = pack_context([_summary(1, "a" * 500)], 200)
    item = packed.source_index[1]
    assert item.snippet.endswith(TRUNCATION_MARKER)
    assert item.snippet in packed.text


def test_empty_input():
    packed = pack_context([], 100)
    assert packed.text == ""
    assert len(packed.source_index) == 0


def test_format_header_rejects_unknown_items():
    with pytest.raises(TypeError):
        format_header(object(), 1)
