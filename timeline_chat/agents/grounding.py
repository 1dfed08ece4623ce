"""Parse structured LLM output and keep only what is traceable to a source.

Every parser takes the raw model text plus the number of packed sources and
returns ``None`` when the output is unusable. Nothing here raises on bad model
output; citation filtering drops data silently.
"""
from __future__ import annotations

import json
import re
from typing import Any

from timeline_chat.models.grounding import (
    CountingExtraction,
    CountingOccurrence,
    Entity,
    Event,
    RouterDecision,
    SynthesisPlan,
)


MAX_REQUESTED_ARTIFACTS = 3
MAX_SUGGESTED_ACTIONS = 5
MAX_ENTITIES = 25
MAX_ENTITY_ALIASES = 6
MAX_EVENTS = 15
MAX_EVENT_ACTORS = 5
MAX_OCCURRENCES = 50

ENTITY_TYPES = {"person", "org", "location", "matter", "document"}
CONFIDENCE_LEVELS = {"high", "medium", "low"}

_MARKER_PATTERN = re.compile(r"([ \t]*)\[(O\s*)?(\d+(?:\s*,\s*\d+)*)\]")


def extract_json_object(raw_text: str | None) -> dict[str, Any] | None:
    """First JSON object in ``raw_text``, tolerating code fences and prose."""
    if not isinstance(raw_text, str):
        return None
    text = raw_text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()

    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        parsed = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    # Trailing prose with braces: decode the first complete object instead.
    decoder = json.JSONDecoder()
    while start >= 0:
        try:
            parsed, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(parsed, dict):
            return parsed
        start = text.find("{", start + 1)
    return None


def _field(payload: dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in payload:
            return payload[name]
    return None


def _clean_str(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return " ".join(value.split())


def _optional_str(value: Any) -> str | None:
    cleaned = _clean_str(value)
    return cleaned or None


def normalize_text_list(raw_values: Any, *, max_items: int) -> list[str]:
    if not isinstance(raw_values, list):
        return []
    cleaned: list[str] = []
    seen: set[str] = set()
    for item in raw_values:
        value = _clean_str(item)
        if not value:
            continue
        key = value.lower()
        if key in seen:
            continue
        seen.add(key)
        cleaned.append(value)
        if len(cleaned) >= max_items:
            break
    return cleaned


def filter_citations(raw: Any, source_count: int) -> list[int]:
    """Integers in ``[1, source_count]``, deduplicated, first-seen order."""
    if not isinstance(raw, list):
        return []
    kept: list[int] = []
    for value in raw:
        if isinstance(value, bool) or not isinstance(value, int):
            continue
        if 1 <= value <= source_count and value not in kept:
            kept.append(value)
    return kept


def parse_router_decision(raw_text: str | None, source_count: int) -> RouterDecision | None:
    payload = extract_json_object(raw_text)
    if payload is None:
        return None
    answer = _field(payload, "answer")
    if not isinstance(answer, str) or not answer.strip():
        return None

    needs_originals = _field(payload, "needsOriginals", "needs_originals")
    requested = normalize_text_list(
        _field(payload, "requestedArtifactIds", "requested_artifact_ids"),
        max_items=MAX_REQUESTED_ARTIFACTS,
    )
    return RouterDecision(
        answer=strip_invalid_markers(answer.strip(), source_count),
        needs_originals=needs_originals is True,
        requested_artifact_ids=requested,
        reason=_clean_str(_field(payload, "reason")),
        suggested_actions=normalize_text_list(
            _field(payload, "suggestedActions", "suggested_actions"),
            max_items=MAX_SUGGESTED_ACTIONS,
        ),
    )


def _parse_entity(raw: Any, source_count: int) -> Entity | None:
    if not isinstance(raw, dict):
        return None
    canonical = _clean_str(raw.get("canonical"))
    entity_type = _clean_str(raw.get("type")).lower()
    citations = filter_citations(raw.get("citations"), source_count)
    if not canonical or entity_type not in ENTITY_TYPES or not citations:
        return None
    confidence = _clean_str(raw.get("confidence")).lower()
    return Entity(
        id=_clean_str(raw.get("id")) or canonical.lower().replace(" ", "-"),
        type=entity_type,  # type: ignore[arg-type]
        canonical=canonical,
        aliases=normalize_text_list(raw.get("aliases"), max_items=MAX_ENTITY_ALIASES),
        confidence=confidence if confidence in CONFIDENCE_LEVELS else "medium",  # type: ignore[arg-type]
        citations=citations,
    )


def _parse_event(raw: Any, source_count: int, position: int) -> Event | None:
    if not isinstance(raw, dict):
        return None
    summary = _clean_str(raw.get("summary"))
    citations = filter_citations(raw.get("citations"), source_count)
    if not summary or not citations:
        return None
    date_iso = _optional_str(_field(raw, "dateISO", "date_iso"))
    return Event(
        id=_clean_str(raw.get("id")) or f"event-{position}",
        date_label=_clean_str(_field(raw, "dateLabel", "date_label")) or date_iso or "Undated",
        summary=summary,
        citations=citations,
        date_iso=date_iso,
        actors=normalize_text_list(raw.get("actors"), max_items=MAX_EVENT_ACTORS),
        theme=_clean_str(raw.get("theme")),
        impact=_clean_str(raw.get("impact")),
    )


def parse_synthesis_plan(raw_text: str | None, source_count: int) -> SynthesisPlan | None:
    payload = extract_json_object(raw_text)
    if payload is None or not isinstance(payload.get("events"), list):
        return None

    entities: list[Entity] = []
    raw_entities = payload.get("entities")
    for raw in raw_entities if isinstance(raw_entities, list) else []:
        entity = _parse_entity(raw, source_count)
        if entity is not None:
            entities.append(entity)
        if len(entities) >= MAX_ENTITIES:
            break

    events: list[Event] = []
    for position, raw in enumerate(payload["events"], start=1):
        event = _parse_event(raw, source_count, position)
        if event is not None:
            events.append(event)
        if len(events) >= MAX_EVENTS:
            break

    return SynthesisPlan(entities=entities, events=events)


def parse_counting_extraction(raw_text: str | None, source_count: int) -> CountingExtraction | None:
    payload = extract_json_object(raw_text)
    if payload is None or not isinstance(payload.get("occurrences"), list):
        return None

    occurrences: list[CountingOccurrence] = []
    for raw in payload["occurrences"][:MAX_OCCURRENCES]:
        if not isinstance(raw, dict):
            continue
        who = _clean_str(raw.get("who"))
        action = _clean_str(raw.get("action"))
        citations = filter_citations(raw.get("citations"), source_count)
        if not who or not action or not citations:
            continue
        occurrences.append(
            CountingOccurrence(
                who=who,
                action=action,
                evidence=_clean_str(raw.get("evidence")),
                citations=citations,
                when=_optional_str(raw.get("when")),
                where=_optional_str(raw.get("where")),
            )
        )
    return CountingExtraction(occurrences=occurrences)


def dedupe_occurrences(occurrences: list[CountingOccurrence]) -> list[CountingOccurrence]:
    """Collapse occurrences sharing who/action/when/where; citations are merged."""
    by_key: dict[tuple[str, str, str, str], CountingOccurrence] = {}
    for occurrence in occurrences:
        existing = by_key.get(occurrence.dedupe_key)
        if existing is None:
            by_key[occurrence.dedupe_key] = CountingOccurrence(
                who=occurrence.who,
                action=occurrence.action,
                evidence=occurrence.evidence,
                citations=list(occurrence.citations),
                when=occurrence.when,
                where=occurrence.where,
            )
            continue
        for number in occurrence.citations:
            if number not in existing.citations:
                existing.citations.append(number)
    return list(by_key.values())


def strip_invalid_markers(text: str, source_count: int, original_count: int = 0) -> str:
    """Drop ``[n]`` / ``[On]`` markers that point outside the known sources."""

    def replace(match: re.Match[str]) -> str:
        leading, original_prefix, body = match.groups()
        limit = original_count if original_prefix else source_count
        numbers = [int(part) for part in body.split(",")]
        valid = [n for n in numbers if 1 <= n <= limit]
        if len(valid) == len(numbers):
            return match.group(0)
        if not valid:
            return ""
        prefix = "O" if original_prefix else ""
        return f"{leading}[{prefix}{', '.join(str(n) for n in valid)}]"

    return _MARKER_PATTERN.sub(replace, text)


def _cited_numbers(text: str, limit: int, *, originals: bool) -> list[int]:
    cited: list[int] = []
    for match in _MARKER_PATTERN.finditer(text or ""):
        _, original_prefix, body = match.groups()
        if bool(original_prefix) != originals:
            continue
        for part in body.split(","):
            number = int(part)
            if 1 <= number <= limit and number not in cited:
                cited.append(number)
    return cited


def cited_source_numbers(text: str, source_count: int) -> list[int]:
    return _cited_numbers(text, source_count, originals=False)


def cited_original_numbers(text: str, original_count: int) -> list[int]:
    return _cited_numbers(text, original_count, originals=True)


def has_headings_in_order(text: str, required: list[str]) -> bool:
    lines = [line.strip() for line in (text or "").splitlines()]
    cursor = 0
    for heading in required:
        try:
            cursor = lines.index(heading, cursor) + 1
        except ValueError:
            return False
    return True
