"""Select the summaries that fill the item budget.

Candidates arrive in relevance order. Each one is scored by its position plus
a recency boost, then picked greedily. When there are more candidates than
slots, the greedy pass limits how many items share a calendar day and skips
near-duplicates. Both constraints are relaxed in turn if the strict pass
comes up short.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable

from timeline_chat.config import settings
from timeline_chat.context.matcher import normalize_query
from timeline_chat.models.context import RankedCandidate, SummaryItem


SECONDS_PER_DAY = 86_400


@dataclass(frozen=True, slots=True)
class RankerConfig:
    recent_days: int = 7
    recent_boost: float = 0.35
    month_days: int = 30
    month_boost: float = 0.15
    day_cap_large: int = 2
    day_cap_small: int = 1
    large_desired_threshold: int = 4

    @classmethod
    def from_settings(cls) -> "RankerConfig":
        return cls(
            recent_days=settings.ranker_recent_days,
            recent_boost=settings.ranker_recent_boost,
            month_days=settings.ranker_month_days,
            month_boost=settings.ranker_month_boost,
            day_cap_large=settings.ranker_day_cap_large,
            day_cap_small=settings.ranker_day_cap_small,
        )


def parse_iso_timestamp(value: str | None) -> float | None:
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def artifact_key(item: SummaryItem) -> str:
    if item.source and item.source_id:
        return f"{item.source}:{item.source_id}"
    return item.artifact_id


def to_candidate(item: SummaryItem) -> RankedCandidate:
    return RankedCandidate(
        item=item,
        artifact_key=artifact_key(item),
        recency_timestamp=parse_iso_timestamp(item.date_iso),
    )


def recency_boost(timestamp: float | None, now_ts: float, config: RankerConfig) -> float:
    if timestamp is None:
        return 0.0
    age_days = (now_ts - timestamp) / SECONDS_PER_DAY
    if age_days <= config.recent_days:
        return config.recent_boost
    if age_days <= config.month_days:
        return config.month_boost
    return 0.0


def _day_bucket(timestamp: float | None) -> date | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).date()


def rank_candidates(
    candidates: list[RankedCandidate],
    desired_count: int,
    *,
    now: datetime | None = None,
    config: RankerConfig | None = None,
) -> list[RankedCandidate]:
    """Return ``min(desired_count, len(candidates))`` candidates in score order."""
    if not candidates or desired_count <= 0:
        return []
    config = config or RankerConfig.from_settings()
    now_ts = (now or datetime.now(timezone.utc)).timestamp()

    total = len(candidates)
    scored = sorted(
        (
            (1 - position / total + recency_boost(c.recency_timestamp, now_ts, config), position)
            for position, c in enumerate(candidates)
        ),
        key=lambda entry: (-entry[0], entry[1]),
    )
    ordered = [position for _, position in scored]

    if total <= desired_count:
        return [candidates[position] for position in ordered]

    day_cap = (
        config.day_cap_large
        if desired_count >= config.large_desired_threshold
        else config.day_cap_small
    )
    selected: list[int] = []
    taken: set[int] = set()
    day_counts: Counter[date] = Counter()
    seen_titles: set[str] = set()
    seen_keys: set[str] = set()

    def is_duplicate(c: RankedCandidate) -> bool:
        title = normalize_query(c.item.title)
        return (bool(title) and title in seen_titles) or c.artifact_key in seen_keys

    def bucket_full(c: RankedCandidate) -> bool:
        bucket = _day_bucket(c.recency_timestamp)
        return bucket is not None and day_counts[bucket] >= day_cap

    def greedy(accept: Callable[[RankedCandidate], bool]) -> None:
        for position in ordered:
            if len(selected) >= desired_count:
                return
            if position in taken:
                continue
            c = candidates[position]
            if not accept(c):
                continue
            selected.append(position)
            taken.add(position)
            bucket = _day_bucket(c.recency_timestamp)
            if bucket is not None:
                day_counts[bucket] += 1
            title = normalize_query(c.item.title)
            if title:
                seen_titles.add(title)
            seen_keys.add(c.artifact_key)

    greedy(lambda c: not is_duplicate(c) and not bucket_full(c))
    greedy(lambda c: not bucket_full(c))
    greedy(lambda c: True)

    rank = {position: index for index, position in enumerate(ordered)}
    return [candidates[position] for position in sorted(selected, key=rank.__getitem__)]
