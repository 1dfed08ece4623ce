"""Query normalization and relevance matching for summaries and saved searches."""
from __future__ import annotations

import re
from dataclasses import dataclass, field

from timeline_chat.models.artifacts import SummaryArtifact, SummaryRef
from timeline_chat.models.context import SelectionSetItem


RECENT_PLACEHOLDER = "recent"
SNIPPET_CONTEXT_CHARS = 40

_COUNTING_PATTERN = re.compile(
    r"\b(how\s+many|how\s+often|number\s+of|count(?:s|ed|ing)?|times\s+did|how\s+frequently)\b",
    re.IGNORECASE,
)


@dataclass(slots=True)
class MatchResult:
    matched: bool
    snippet: str = ""
    fields: list[str] = field(default_factory=list)


def normalize_query(text: str | None) -> str:
    return " ".join((text or "").lower().split())


def is_recent_query(query: str) -> bool:
    normalized = normalize_query(query)
    return not normalized or normalized == RECENT_PLACEHOLDER


def is_counting_question(text: str | None) -> bool:
    return bool(_COUNTING_PATTERN.search(text or ""))


def find_snippet(text: str | None, query: str) -> str:
    """Window of text around the first occurrence of ``query``."""
    if not text or not query:
        return ""
    index = text.lower().find(query)
    if index < 0:
        return ""

    start = max(0, index - SNIPPET_CONTEXT_CHARS)
    end = min(len(text), index + len(query) + SNIPPET_CONTEXT_CHARS)
    snippet = text[start:end].strip()
    if start > 0:
        snippet = f"…{snippet}"
    if end < len(text):
        snippet = f"{snippet}…"
    return snippet


def _field_matches(text: str | None, query: str) -> bool:
    return bool(text) and bool(query) and query in text.lower()


def _metadata_text(artifact: SummaryArtifact) -> str | None:
    meta = artifact.source_metadata
    if meta is None:
        return None
    parts = [
        meta.from_,
        meta.to,
        meta.subject,
        " ".join(meta.labels) if meta.labels else None,
        meta.drive_name,
        meta.mime_type,
    ]
    return " ".join(part for part in parts if part) or None


def match_index_entry(ref: SummaryRef, query: str) -> bool:
    query = normalize_query(query)
    if not query:
        return False
    haystack = " ".join(part for part in (ref.title, ref.source_id, ref.source) if part)
    return query in haystack.lower()


def match_summary_artifact(artifact: SummaryArtifact, query: str) -> MatchResult:
    """Full-text match; the snippet comes from the first matching field."""
    query = normalize_query(query)
    result = MatchResult(matched=False)
    if not query:
        return result

    highlights = " ".join(artifact.highlights) if artifact.highlights else None
    for name, text in (
        ("title", artifact.title),
        ("summary", artifact.summary),
        ("highlights", highlights),
        ("sourceMetadata", _metadata_text(artifact)),
    ):
        if _field_matches(text, query):
            result.fields.append(name)
            result.snippet = result.snippet or find_snippet(text, query)

    result.matched = bool(result.fields)
    return result


def pick_snippet(artifact: SummaryArtifact, query: str) -> str:
    query = normalize_query(query)
    if query and not is_recent_query(query):
        matched = match_summary_artifact(artifact, query)
        if matched.snippet:
            return matched.snippet
    if artifact.summary:
        return artifact.summary
    if artifact.highlights:
        return " ".join(artifact.highlights)
    if artifact.title and query:
        return find_snippet(artifact.title, query)
    return ""


def score_selection_set(item: SelectionSetItem, query: str) -> int:
    """Number of query tokens present in the saved search's title, query and source."""
    query = normalize_query(query)
    if not query:
        return 0
    haystack = f"{item.title} {item.query} {item.source}".lower()
    return sum(1 for token in query.split() if token in haystack)
