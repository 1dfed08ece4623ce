"""Lay numbered context blocks into a character budget."""
from __future__ import annotations

from dataclasses import dataclass

from timeline_chat.models.context import (
    ContextItem,
    RunItem,
    SelectionSetItem,
    SourceIndex,
    SummaryItem,
)


DEFAULT_MAX_CONTEXT_CHARS = 12000
TRUNCATION_MARKER = "… [truncated]"


@dataclass(slots=True)
class PackedContext:
    text: str
    source_index: SourceIndex


def truncate_text(value: str, max_chars: int) -> str:
    if len(value) <= max_chars:
        return value
    keep = max(0, max_chars - len(TRUNCATION_MARKER) - 1)
    return f"{value[:keep].rstrip()}{TRUNCATION_MARKER}"


def format_header(item: ContextItem, number: int) -> str:
    if isinstance(item, SummaryItem):
        date = f" [{item.date_iso}]" if item.date_iso else ""
        return f"SOURCE {number} (SUMMARY): {item.title}{date}"
    if isinstance(item, SelectionSetItem):
        return f"SOURCE {number} (SAVED SEARCH): {item.title} [{item.updated_at_iso}]"
    if isinstance(item, RunItem):
        finished = f" [{item.finished_at_iso}]" if item.finished_at_iso else ""
        return f"SOURCE {number} (RUN): {item.label}{finished}"
    raise TypeError(f"Unknown context item: {type(item).__name__}")


def pack_context(
    items: list[ContextItem],
    max_context_chars: int = DEFAULT_MAX_CONTEXT_CHARS,
) -> PackedContext:
    """Pack items in order until the next header no longer fits.

    Bodies are truncated to whatever budget remains; headers never are. The
    items that made it in, carrying their truncated bodies, become the
    request's SourceIndex.
    """
    context = ""
    included: list[ContextItem] = []

    for item in items:
        header = f"{format_header(item, len(included) + 1)}\n"
        remaining = max_context_chars - len(context)
        if remaining <= len(header) + 1:
            break

        body = truncate_text(item.body, max(remaining - len(header) - 2, 0))
        block = f"{header}{body}\n\n"
        if len(context) + len(block) > max_context_chars:
            break

        context += block
        included.append(item.with_body(body))

    return PackedContext(text=context.strip(), source_index=SourceIndex(included))
