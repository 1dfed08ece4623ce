from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


SourceKind = Literal["gmail", "drive"]


@dataclass(slots=True)
class SourceMetadata:
    from_: str | None = None
    to: str | None = None
    subject: str | None = None
    labels: list[str] = field(default_factory=list)
    drive_name: str | None = None
    mime_type: str | None = None
    date_iso: str | None = None


@dataclass(slots=True)
class SummaryArtifact:
    """A stored summary of one email or document."""

    artifact_id: str
    title: str
    source: SourceKind
    source_id: str
    summary: str
    highlights: list[str] = field(default_factory=list)
    created_at_iso: str | None = None
    drive_file_id: str | None = None
    source_metadata: SourceMetadata | None = None

    @property
    def date_iso(self) -> str | None:
        if self.created_at_iso:
            return self.created_at_iso
        return self.source_metadata.date_iso if self.source_metadata else None


@dataclass(slots=True)
class SummaryRef:
    """Listing entry for a stored summary.

    Refs read from a precomputed index carry title/source fields; refs from a
    plain folder listing only know their file id and modification time.
    """

    file_id: str
    title: str = ""
    source: str = ""
    source_id: str = ""
    updated_at_iso: str | None = None


@dataclass(slots=True)
class SummaryListing:
    refs: list[SummaryRef]
    from_index: bool


@dataclass(slots=True)
class OriginalRef:
    artifact_id: str
    title: str
    source: SourceKind
    source_id: str


@dataclass(slots=True)
class OpenedOriginal:
    artifact_id: str
    title: str
    source: SourceKind
    source_id: str
    text: str
    truncated: bool
    note: str | None = None


@dataclass(slots=True)
class OriginalsOpenedRecord:
    """Run-history record written after a chat opened original documents."""

    request_id: str
    started_at_iso: str
    finished_at_iso: str
    opened: list[OriginalRef]
    truncated_count: int
    status: Literal["success", "partial", "failed"]
