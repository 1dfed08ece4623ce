from __future__ import annotations

import json

from timeline_chat.agents.grounding import (
    MAX_EVENTS,
    cited_original_numbers,
    cited_source_numbers,
    dedupe_occurrences,
    extract_json_object,
    filter_citations,
    has_headings_in_order,
    parse_counting_extraction,
    parse_router_decision,
    parse_synthesis_plan,
    strip_invalid_markers,
)
from timeline_chat.models.grounding import CountingOccurrence


class TestExtractJsonObject:
    def test_plain_object(self):
        assert extract_json_object('{"answer": "hi"}') == {"answer": "hi"}

    def test_fenced_block(self):
        raw = '```json\n{"answer": "fenced"}\n```'
        assert extract_json_object(raw) == {"answer": "fenced"}

    def test_leading_and_trailing_prose(self):
        raw = 'Sure, here it is: {"answer": "x"} Let me know!'
        assert extract_json_object(raw) == {"answer": "x"}

    def test_trailing_braces_in_prose(self):
        raw = 'Result {"answer": "first"} and also {not json}'
        assert extract_json_object(raw) == {"answer": "first"}

    def test_garbage(self):
        assert extract_json_object("no json here") is None
        assert extract_json_object(None) is None
        assert extract_json_object("[1, 2, 3]") is None


def test_filter_citations_keeps_in_range_ints_in_order():
    assert filter_citations([3, 1, 3, 0, 9, "2", True, 2.0, 2], 3) == [3, 1, 2]
    assert filter_citations("1", 3) == []


class TestRouterDecision:
    def test_camel_case_payload(self):
        raw = json.dumps(
            {
                "answer": "The landlord replied [1].",
                "needsOriginals": True,
                "requestedArtifactIds": ["a1", "a2", "a1", "a3", "a4"],
                "reason": "Need exact wording",
                "suggestedActions": ["Open the lease", "Open the lease"],
            }
        )
        decision = parse_router_decision(raw, 2)
        assert decision is not None
        assert decision.needs_originals is True
        assert decision.requested_artifact_ids == ["a1", "a2", "a3"]
        assert decision.suggested_actions == ["Open the lease"]

    def test_out_of_range_markers_are_removed_from_answer(self):
        raw = '{"answer": "Alex called [1] twice [5].", "needsOriginals": false}'
        decision = parse_router_decision(raw, 2)
        assert decision is not None
        assert decision.answer == "Alex called [1] twice."

    def test_non_boolean_needs_originals_is_false(self):
        decision = parse_router_decision('{"answer": "ok", "needsOriginals": "true"}', 1)
        assert decision is not None
        assert decision.needs_originals is False

    def test_missing_answer_is_rejected(self):
        assert parse_router_decision('{"needsOriginals": true}', 1) is None
        assert parse_router_decision('{"answer": "   "}', 1) is None
        assert parse_router_decision("plain text answer", 1) is None


class TestSynthesisPlan:
    def test_events_without_valid_citations_are_dropped(self):
        raw = json.dumps(
            {
                "entities": [
                    {"id": "p1", "type": "person", "canonical": "Dana", "citations": [1]},
                    {"id": "p2", "type": "person", "canonical": "Ghost", "citations": [7]},
                    {"id": "x", "type": "planet", "canonical": "Mars", "citations": [1]},
                ],
                "events": [
                    {"id": "e1", "dateLabel": "Jan 3", "summary": "Lease signed", "citations": [1, "2", 2, True]},
                    {"id": "e2", "dateLabel": "Jan 4", "summary": "Rumour", "citations": [0, 3, 9]},
                    {"id": "e3", "dateLabel": "Jan 5", "summary": "No cites"},
                ],
            }
        )
        plan = parse_synthesis_plan(raw, 2)
        assert plan is not None
        assert [event.id for event in plan.events] == ["e1"]
        assert plan.events[0].citations == [1, 2]
        assert [entity.canonical for entity in plan.entities] == ["Dana"]

    def test_every_citation_in_range(self):
        events = [
            {"summary": f"event {n}", "citations": [n % 5, n, -1]}
            for n in range(1, 30)
        ]
        plan = parse_synthesis_plan(json.dumps({"events": events}), 4)
        assert plan is not None
        assert len(plan.events) <= MAX_EVENTS
        for event in plan.events:
            assert event.citations
            assert all(1 <= c <= 4 for c in event.citations)

    def test_missing_events_list_is_rejected(self):
        assert parse_synthesis_plan('{"entities": []}', 3) is None

    def test_empty_events_is_a_valid_plan(self):
        plan = parse_synthesis_plan('{"events": []}', 3)
        assert plan is not None
        assert plan.events == []


class TestCounting:
    def test_only_grounded_occurrences_survive(self):
        raw = json.dumps(
            {
                "occurrences": [
                    {"who": "Alex", "action": "called", "evidence": "called Monday", "citations": []},
                    {"who": "Alex", "action": "texted", "evidence": "texted", "citations": [7]},
                    {"who": "Alex", "action": "emailed", "evidence": "sent an email", "citations": [2]},
                ]
            }
        )
        extraction = parse_counting_extraction(raw, 3)
        assert extraction is not None
        assert len(extraction.occurrences) == 1
        assert extraction.occurrences[0].citations == [2]

    def test_dedupe_collapses_normalized_keys_and_merges_citations(self):
        occurrences = [
            CountingOccurrence(who="Alex", action="Called", evidence="a", citations=[1], when="Monday"),
            CountingOccurrence(who=" alex ", action="called", evidence="b", citations=[3, 1], when="monday"),
            CountingOccurrence(who="Alex", action="called", evidence="c", citations=[2], when="Tuesday"),
        ]
        deduped = dedupe_occurrences(occurrences)
        assert len(deduped) == 2
        assert deduped[0].citations == [1, 3]
        assert occurrences[0].citations == [1]

    def test_missing_occurrences_list_is_rejected(self):
        assert parse_counting_extraction('{"count": 3}', 3) is None


class TestMarkers:
    def test_strip_invalid_markers(self):
        text = "See [1, 4]. Also [3] and [O2] but [O1]."
        assert strip_invalid_markers(text, 2, 1) == "See [1]. Also and but [O1]."

    def test_markers_inside_range_untouched(self):
        text = "- First [1]\n  - nested [2][1]"
        assert strip_invalid_markers(text, 2) == text

    def test_cited_numbers(self):
        text = "A [2] B [1][2] C [O1] [9]"
        assert cited_source_numbers(text, 3) == [2, 1]
        assert cited_original_numbers(text, 2) == [1]


def test_headings_in_order():
    text = "## One\nbody\n## Two\nmore\n## Three"
    assert has_headings_in_order(text, ["## One", "## Two", "## Three"])
    assert not has_headings_in_order(text, ["## Two", "## One"])
    assert not has_headings_in_order(text, ["## One", "## Four"])
