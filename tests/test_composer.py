from __future__ import annotations

from timeline_chat.agents.composer import (
    append_notes,
    build_citations,
    compose_counting_text,
    compose_guard_reply,
    compose_reply,
    merge_suggested_actions,
)
from timeline_chat.models.artifacts import OpenedOriginal
from timeline_chat.models.context import RunItem, SelectionSetItem, SourceIndex, SummaryItem
from timeline_chat.models.grounding import CountingOccurrence


def _index() -> SourceIndex:
    return SourceIndex(
        [
            SummaryItem(
                artifact_id="a1", title="Lease", snippet="x", source="gmail", source_id="m1",
                date_iso="2026-01-03",
            ),
            SelectionSetItem(
                id="s1", title="Landlord", source="gmail", query="from:landlord",
                updated_at_iso="2026-01-01", text="Saved search",
            ),
            RunItem(
                id="r1", action="run", started_at_iso="2026-01-02", status="success", text="Run",
                selection_set_title="Landlord",
            ),
        ]
    )


def test_citations_follow_markers():
    citations = build_citations("Signed [1]; tracked by a saved search [2].", _index())
    assert [c.kind for c in citations] == ["summary", "selection_set"]
    assert citations[0].artifact_id == "a1"
    assert citations[0].date_iso == "2026-01-03"
    assert citations[1].selection_set_id == "s1"


def test_citations_default_to_all_sources():
    citations = build_citations("No markers here.", _index())
    assert [c.kind for c in citations] == ["summary", "selection_set", "run"]
    assert citations[2].run_id == "r1"
    assert citations[2].title == "run • Landlord"


def test_original_citations():
    original = OpenedOriginal(
        artifact_id="a1", title="Lease", source="gmail", source_id="m1", text="t", truncated=False,
    )
    citations = build_citations("Quote [1][O1].", _index(), [original])
    assert [c.kind for c in citations] == ["summary", "original"]
    assert citations[1].source_id == "m1"


def test_only_pins_citations():
    citations = build_citations("[1] [2] [3]", _index(), only=[3, 9])
    assert [c.kind for c in citations] == ["run"]


def test_compose_reply_strips_bad_markers_and_appends_notes():
    result = compose_reply(
        "Answer [1] and [7].",
        _index(),
        provider="openai",
        model="gpt",
        request_id="r",
        notes=["Note A", "Note A", "Note B"],
    )
    assert result.reply == "Answer [1] and.\n\nNote A\n\nNote B"
    assert [c.artifact_id for c in result.citations] == ["a1"]
    assert len(result.suggested_actions) == 3


def test_compose_reply_citations_always_in_range():
    index = _index()
    result = compose_reply("[0] [1] [2] [3] [4] [99]", index, provider="p", model="m", request_id="r")
    assert len(result.citations) == 3


def test_suggested_actions_merge_and_cap():
    merged = merge_suggested_actions(["A", "a", "B"], ["C", "D", "E", "F"])
    assert merged == ["A", "B", "C", "D", "E"]


def test_append_notes_without_notes():
    assert append_notes("text", []) == "text"


def test_guard_reply_has_no_citations():
    result = compose_guard_reply("No timeline sources available to analyze.", provider="stub", model="stub", request_id="r")
    assert result.citations == []
    response = result.to_response().model_dump(by_alias=True)
    assert response["requestId"] == "r"
    assert response["provider"] == {"name": "stub", "model": "stub"}


def test_counting_text():
    occurrences = [
        CountingOccurrence(who="Alex", action="called", evidence="rang twice", citations=[2], when="Monday"),
        CountingOccurrence(who="Sam", action="emailed", evidence="", citations=[1, 2]),
    ]
    text, cited = compose_counting_text(occurrences)
    assert text.startswith("I found 2 occurrence(s)")
    assert "- Alex called (Monday): “rang twice” [2]" in text
    assert "- Sam emailed [1][2]" in text
    assert cited == [2, 1]


def test_counting_text_lists_at_most_five():
    occurrences = [
        CountingOccurrence(who=f"P{n}", action="called", evidence="", citations=[1]) for n in range(7)
    ]
    text, _ = compose_counting_text(occurrences)
    assert text.count("\n- ") == 5
    assert "…and 2 more." in text


def test_counting_text_without_occurrences():
    text, cited = compose_counting_text([])
    assert cited == []
    assert "can't confirm" in text
