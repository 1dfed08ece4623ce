from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal


EntityType = Literal["person", "org", "location", "matter", "document"]
Confidence = Literal["high", "medium", "low"]


@dataclass(slots=True)
class RouterDecision:
    """First-pass answer plus the decision whether originals are needed."""

    answer: str
    needs_originals: bool = False
    requested_artifact_ids: list[str] = field(default_factory=list)
    reason: str = ""
    suggested_actions: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Entity:
    id: str
    type: EntityType
    canonical: str
    aliases: list[str] = field(default_factory=list)
    confidence: Confidence = "medium"
    citations: list[int] = field(default_factory=list)


@dataclass(slots=True)
class Event:
    id: str
    date_label: str
    summary: str
    citations: list[int]
    date_iso: str | None = None
    actors: list[str] = field(default_factory=list)
    theme: str = ""
    impact: str = ""


@dataclass(slots=True)
class SynthesisPlan:
    entities: list[Entity] = field(default_factory=list)
    events: list[Event] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entities": [asdict(entity) for entity in self.entities],
            "events": [asdict(event) for event in self.events],
        }


@dataclass(slots=True)
class CountingOccurrence:
    who: str
    action: str
    evidence: str
    citations: list[int]
    when: str | None = None
    where: str | None = None

    @property
    def dedupe_key(self) -> tuple[str, str, str, str]:
        return (
            _norm(self.who),
            _norm(self.action),
            _norm(self.when),
            _norm(self.where),
        )


@dataclass(slots=True)
class CountingExtraction:
    occurrences: list[CountingOccurrence] = field(default_factory=list)


def _norm(value: str | None) -> str:
    return " ".join((value or "").split()).lower()
