from __future__ import annotations

from timeline_chat.agents import prompting
from timeline_chat.models.artifacts import OpenedOriginal
from timeline_chat.models.context import SelectionSetItem, SourceIndex, SummaryItem
from timeline_chat.models.grounding import Event, SynthesisPlan
from timeline_chat.models.schemas import ChatSettings


def _index() -> SourceIndex:
    return SourceIndex(
        [
            SummaryItem(artifact_id="a1", title="Lease", snippet="x", source="gmail", source_id="m1"),
            SelectionSetItem(
                id="s1", title="Landlord", source="gmail", query="from:landlord",
                updated_at_iso="2026-01-01", text="Saved search",
            ),
            SummaryItem(artifact_id="a2", title="Repair", snippet="y", source="drive", source_id="d2"),
        ]
    )


class TestSystemPrompt:
    def test_plain_mode_has_no_addenda(self):
        prompt = prompting.build_system_prompt(ChatSettings())
        assert "Advisor mode" not in prompt
        assert "Synthesis mode" not in prompt
        assert "[O1]" not in prompt

    def test_admin_prompt_is_appended(self):
        prompt = prompting.build_system_prompt(ChatSettings(system_prompt="Answer in French."))
        assert "Answer in French." in prompt

    def test_advisor_headings(self):
        prompt = prompting.build_system_prompt(ChatSettings(), advisor_mode=True)
        assert "## Timeline summary" in prompt
        assert "## Suggested next steps" in prompt

    def test_synthesis_implies_advisor_addendum(self):
        prompt = prompting.build_system_prompt(ChatSettings(), synthesis_mode=True)
        assert "Advisor mode" in prompt
        assert "Synthesis mode" in prompt

    def test_originals_addendum(self):
        prompt = prompting.build_system_prompt(ChatSettings(), with_originals=True)
        assert "[O1]" in prompt


def test_router_messages_list_only_summary_ids():
    messages = prompting.build_router_messages("SOURCE 1 ...", "who fixed the sink?", _index())
    assert [m.role for m in messages] == ["user", "user", "user"]
    assert messages[1].content == "Question: who fixed the sink?"
    instruction = messages[2].content
    assert "SOURCE 1: a1" in instruction
    assert "SOURCE 3: a2" in instruction
    assert "s1" not in instruction


def test_originals_messages_number_blocks():
    original = OpenedOriginal(
        artifact_id="a1", title="Lease", source="gmail", source_id="m1", text="Full text", truncated=False,
    )
    messages = prompting.build_originals_messages("ctx", "q", [original])
    assert messages[1].content == "ORIGINAL 1 (gmail:m1): Lease\nFull text"
    assert "[O1]" in messages[-1].content


def test_synthesis_writeup_carries_plan_and_headings():
    plan = SynthesisPlan(events=[Event(id="e1", date_label="Jan 3", summary="Lease signed", citations=[1])])
    messages = prompting.build_synthesis_writeup_messages("ctx", "q", plan)
    instruction = messages[-1].content
    assert '"summary": "Lease signed"' in instruction
    assert "## Chronology" in instruction


def test_counting_instruction_mentions_source_range():
    messages = prompting.build_counting_messages("ctx", "how many calls?", 4)
    assert "from 1 to 4" in messages[-1].content


def test_canned_fallbacks():
    assert "## Timeline summary" in prompting.canned_fallback(advisor_mode=True)
    assert "## Suggested next steps" in prompting.canned_fallback(advisor_mode=True)
    assert "## Chronology" in prompting.canned_fallback(synthesis_mode=True)
    assert "##" not in prompting.canned_fallback()


def test_default_suggested_actions():
    assert len(prompting.default_suggested_actions()) == 3
    with_originals = prompting.default_suggested_actions(originals=True)
    assert with_originals[0].startswith("Enable “Allow opening originals”")
