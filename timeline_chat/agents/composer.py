"""Turn the final pass output into the user-facing reply and citations."""
from __future__ import annotations

from dataclasses import dataclass, field

from timeline_chat.agents.grounding import (
    MAX_SUGGESTED_ACTIONS,
    cited_original_numbers,
    cited_source_numbers,
    normalize_text_list,
    strip_invalid_markers,
)
from timeline_chat.agents.prompting import default_suggested_actions, message
from timeline_chat.models.artifacts import OpenedOriginal
from timeline_chat.models.context import SourceIndex, citation_for
from timeline_chat.models.grounding import CountingOccurrence
from timeline_chat.models.schemas import ChatResponse, Citation, ProviderInfo


MAX_LISTED_OCCURRENCES = 5


@dataclass(slots=True)
class ChatResult:
    reply: str
    citations: list[Citation]
    suggested_actions: list[str]
    provider: str
    model: str
    request_id: str
    notes: list[str] = field(default_factory=list)

    def to_response(self) -> ChatResponse:
        return ChatResponse(
            reply=self.reply,
            citations=self.citations,
            suggested_actions=self.suggested_actions,
            provider=ProviderInfo(name=self.provider, model=self.model),
            request_id=self.request_id,
        )


def _original_citation(original: OpenedOriginal) -> Citation:
    return Citation(
        kind="original",
        artifact_id=original.artifact_id,
        title=original.title,
        source=original.source,
        source_id=original.source_id,
    )


def build_citations(
    text: str,
    source_index: SourceIndex,
    originals: list[OpenedOriginal] | None = None,
    *,
    only: list[int] | None = None,
) -> list[Citation]:
    """Citations for the sources the text marks, or every source if it marks none.

    ``only`` pins the exact source numbers to cite.
    """
    originals = originals or []
    if only is not None:
        numbers = [n for n in only if source_index.contains(n)]
    else:
        numbers = cited_source_numbers(text, len(source_index)) or list(range(1, len(source_index) + 1))

    citations = [Citation(**citation_for(source_index[n])) for n in numbers]
    if originals and only is None:
        original_numbers = cited_original_numbers(text, len(originals)) or list(range(1, len(originals) + 1))
        citations.extend(_original_citation(originals[n - 1]) for n in original_numbers)
    return citations


def merge_suggested_actions(*groups: list[str] | None) -> list[str]:
    merged: list[str] = []
    for group in groups:
        merged.extend(group or [])
    return normalize_text_list(merged, max_items=MAX_SUGGESTED_ACTIONS)


def append_notes(text: str, notes: list[str]) -> str:
    unique = [note for index, note in enumerate(notes) if note and note not in notes[:index]]
    if not unique:
        return text
    return "\n\n".join([text.rstrip(), *unique])


def compose_reply(
    text: str,
    source_index: SourceIndex,
    *,
    provider: str,
    model: str,
    request_id: str,
    originals: list[OpenedOriginal] | None = None,
    notes: list[str] | None = None,
    suggested_actions: list[str] | None = None,
    only_cited: list[int] | None = None,
    needs_originals: bool = False,
) -> ChatResult:
    originals = originals or []
    notes = notes or []
    clean = strip_invalid_markers(text.strip(), len(source_index), len(originals))
    return ChatResult(
        reply=append_notes(clean, notes),
        citations=build_citations(clean, source_index, originals, only=only_cited),
        suggested_actions=merge_suggested_actions(
            suggested_actions,
            default_suggested_actions(originals=needs_originals),
        ),
        provider=provider,
        model=model,
        request_id=request_id,
        notes=notes,
    )


def compose_guard_reply(text: str, *, provider: str, model: str, request_id: str) -> ChatResult:
    """Reply for requests stopped before any LLM call."""
    return ChatResult(
        reply=text,
        citations=[],
        suggested_actions=merge_suggested_actions(default_suggested_actions()),
        provider=provider,
        model=model,
        request_id=request_id,
    )


def _describe_occurrence(occurrence: CountingOccurrence) -> str:
    description = f"{occurrence.who} {occurrence.action}"
    if occurrence.when:
        description += f" ({occurrence.when})"
    if occurrence.where:
        description += f" at {occurrence.where}"
    if occurrence.evidence:
        description += f": “{occurrence.evidence}”"
    return description


def compose_counting_text(occurrences: list[CountingOccurrence]) -> tuple[str, list[int]]:
    """Deterministic counting reply and the source numbers it rests on."""
    if not occurrences:
        return message("counting_none"), []

    lines = [message("counting_found", count=len(occurrences))]
    for occurrence in occurrences[:MAX_LISTED_OCCURRENCES]:
        markers = "".join(f"[{n}]" for n in occurrence.citations)
        lines.append(message("counting_item", description=_describe_occurrence(occurrence), markers=markers))
    remaining = len(occurrences) - MAX_LISTED_OCCURRENCES
    if remaining > 0:
        lines.append(message("counting_more", remaining=remaining))
    lines.append("")
    lines.append(message("counting_caveat"))

    cited: list[int] = []
    for occurrence in occurrences:
        cited.extend(n for n in occurrence.citations if n not in cited)
    return "\n".join(lines), cited
