"""Assemble system prompts and message lists for each chat pass."""
from __future__ import annotations

import json

from timeline_chat.models.artifacts import OpenedOriginal
from timeline_chat.models.context import SourceIndex
from timeline_chat.models.grounding import SynthesisPlan
from timeline_chat.models.interfaces import LLMMessage
from timeline_chat.models.schemas import ChatSettings
from timeline_chat.services.prompt_store import prompt_lines, render_prompt


def headings(kind: str) -> list[str]:
    return prompt_lines(f"headings.{kind}")


def build_system_prompt(
    chat_settings: ChatSettings,
    *,
    advisor_mode: bool = False,
    synthesis_mode: bool = False,
    with_originals: bool = False,
) -> str:
    parts = [render_prompt("chat.system_base")]
    admin_prompt = chat_settings.system_prompt.strip()
    if admin_prompt:
        parts.append(render_prompt("chat.admin_prompt_block", admin_prompt=admin_prompt))
    if advisor_mode or synthesis_mode:
        parts.append(
            render_prompt("chat.advisor_addendum", headings="\n".join(headings("advisor")))
        )
    if synthesis_mode:
        parts.append(render_prompt("chat.synthesis_addendum"))
    if with_originals:
        parts.append(render_prompt("chat.originals_addendum"))
    return "\n".join(parts)


def _context_and_question(context_text: str, query: str) -> list[LLMMessage]:
    return [
        LLMMessage(role="user", content=render_prompt("chat.context_block", context=context_text)),
        LLMMessage(role="user", content=render_prompt("chat.question_block", query=query)),
    ]


def artifact_id_lines(source_index: SourceIndex) -> str:
    lines = []
    for number, item in enumerate(source_index, start=1):
        if item.kind == "summary":
            lines.append(f"  SOURCE {number}: {item.artifact_id}")
    return "\n".join(lines) or "  (none)"


def build_router_messages(context_text: str, query: str, source_index: SourceIndex) -> list[LLMMessage]:
    instruction = render_prompt("chat.router_instruction", artifact_ids=artifact_id_lines(source_index))
    return [*_context_and_question(context_text, query), LLMMessage(role="user", content=instruction)]


def format_originals_block(originals: list[OpenedOriginal]) -> str:
    blocks = []
    for number, original in enumerate(originals, start=1):
        header = render_prompt(
            "chat.originals_block_header",
            number=number,
            source=original.source,
            source_id=original.source_id,
            title=original.title,
        )
        blocks.append(f"{header}\n{original.text}")
    return "\n\n".join(blocks)


def build_originals_messages(
    context_text: str,
    query: str,
    originals: list[OpenedOriginal],
) -> list[LLMMessage]:
    return [
        LLMMessage(role="user", content=render_prompt("chat.context_block", context=context_text)),
        LLMMessage(role="user", content=format_originals_block(originals)),
        LLMMessage(role="user", content=render_prompt("chat.question_block", query=query)),
        LLMMessage(role="user", content=render_prompt("chat.originals_instruction")),
    ]


def build_synthesis_plan_messages(context_text: str, query: str, source_count: int) -> list[LLMMessage]:
    instruction = render_prompt("chat.synthesis_plan_instruction", source_count=source_count)
    return [*_context_and_question(context_text, query), LLMMessage(role="user", content=instruction)]


def build_synthesis_writeup_messages(
    context_text: str,
    query: str,
    plan: SynthesisPlan,
) -> list[LLMMessage]:
    instruction = render_prompt(
        "chat.synthesis_writeup_instruction",
        headings="\n".join(headings("synthesis")),
        plan_json=json.dumps(plan.to_dict(), ensure_ascii=False, indent=2),
    )
    return [*_context_and_question(context_text, query), LLMMessage(role="user", content=instruction)]


def build_counting_messages(context_text: str, query: str, source_count: int) -> list[LLMMessage]:
    instruction = render_prompt("chat.counting_instruction", source_count=source_count)
    return [*_context_and_question(context_text, query), LLMMessage(role="user", content=instruction)]


def canned_fallback(*, advisor_mode: bool = False, synthesis_mode: bool = False) -> str:
    if synthesis_mode:
        return render_prompt("fallback.synthesis")
    if advisor_mode:
        return render_prompt("fallback.advisor")
    return render_prompt("fallback.plain")


def message(key: str, **values) -> str:
    return render_prompt(f"messages.{key}", **values)


def default_suggested_actions(*, originals: bool = False) -> list[str]:
    actions = prompt_lines("suggested_actions.default")
    if originals:
        actions = prompt_lines("suggested_actions.originals") + actions
    return actions
