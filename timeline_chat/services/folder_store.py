"""JSON-folder implementations of the chat engine's store collaborators.

Folder layout::

    index.json                      optional precomputed summary index
    <title> - Summary.json          one summary artifact per file
    SelectionSet-<id>.json          saved searches
    Run-<id>.json                   selection-set run history
    ChatRun-<id>.json               originals opened by earlier chats
    admin_settings.json             chat settings
    originals/<source>/<id>.txt     original document text
"""
from __future__ import annotations

import asyncio
import json
import re
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar

from pydantic import ValidationError

from timeline_chat.config import settings
from timeline_chat.context.packer import truncate_text
from timeline_chat.llm_errors import StoreError
from timeline_chat.models.artifacts import (
    OpenedOriginal,
    OriginalRef,
    OriginalsOpenedRecord,
    SourceMetadata,
    SummaryArtifact,
    SummaryListing,
    SummaryRef,
)
from timeline_chat.models.context import RunItem, SelectionSetItem
from timeline_chat.models.schemas import ChatSettings
from timeline_chat.services.logger import log_store_operation


SUMMARY_SUFFIX = " - summary.json"
INDEX_FILE = "index.json"
SETTINGS_FILE = "admin_settings.json"
ORIGINALS_DIR = "originals"
LIST_PAGE_SIZE = 50
MAX_SELECTION_SETS = 5
MAX_RECENT_RUNS = 10
MAX_META_TEXT_CHARS = 800
MAX_RUN_REQUEST_IDS = 3
SOURCES = ("gmail", "drive")

T = TypeVar("T")


async def _run_blocking(operation: str, target: str, func: Callable[[], T], timeout: float | None = None) -> T:
    timeout = timeout or settings.store_timeout_seconds
    try:
        return await asyncio.wait_for(asyncio.to_thread(func), timeout=timeout)
    except asyncio.TimeoutError as exc:
        log_store_operation(operation, target, "timeout", error=f"Timed out after {timeout}s")
        raise StoreError(operation, f"{operation} timed out", code="upstream_timeout") from exc
    except OSError as exc:
        log_store_operation(operation, target, "failed", error=str(exc))
        raise StoreError(operation, f"{operation} failed: {exc}") from exc


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


def _mtime_iso(path: Path) -> str:
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc).isoformat()


def _sorted_by_mtime(paths: list[Path]) -> list[Path]:
    return sorted(paths, key=lambda p: p.stat().st_mtime, reverse=True)


def _timestamp(value: str | None) -> float:
    if not value:
        return 0.0
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def is_summary_json_file(name: str) -> bool:
    return name.lower().endswith(SUMMARY_SUFFIX)


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _int_or_none(value: Any) -> int | None:
    return value if isinstance(value, int) and not isinstance(value, bool) else None


def parse_summary_artifact(payload: Any, file_id: str) -> SummaryArtifact | None:
    if not isinstance(payload, dict):
        return None
    title = payload.get("title")
    source = payload.get("source")
    source_id = payload.get("sourceId")
    summary = payload.get("summary")
    if not isinstance(title, str) or source not in SOURCES or not isinstance(source_id, str):
        return None
    if not isinstance(summary, str):
        return None

    highlights = payload.get("highlights")
    metadata = payload.get("sourceMetadata")
    source_metadata = None
    if isinstance(metadata, dict):
        labels = metadata.get("labels")
        source_metadata = SourceMetadata(
            from_=_str_or_none(metadata.get("from")),
            to=_str_or_none(metadata.get("to")),
            subject=_str_or_none(metadata.get("subject")),
            labels=[label for label in labels if isinstance(label, str)] if isinstance(labels, list) else [],
            drive_name=_str_or_none(metadata.get("driveName")),
            mime_type=_str_or_none(metadata.get("mimeType")),
            date_iso=_str_or_none(metadata.get("dateISO")),
        )

    return SummaryArtifact(
        artifact_id=_str_or_none(payload.get("artifactId")) or file_id,
        title=title,
        source=source,
        source_id=source_id,
        summary=summary,
        highlights=[h for h in highlights if isinstance(h, str)] if isinstance(highlights, list) else [],
        created_at_iso=_str_or_none(payload.get("createdAtISO")),
        drive_file_id=_str_or_none(payload.get("driveFileId")) or file_id,
        source_metadata=source_metadata,
    )


def selection_set_text(title: str, source: str, query: str, updated_at: str) -> str:
    return truncate_text(
        f"Saved search: {title} (source: {source}). Query: {query}. Updated: {updated_at}.",
        MAX_META_TEXT_CHARS,
    )


def run_text(
    *,
    action: str,
    status: str,
    started_at: str,
    finished_at: str | None = None,
    selection_set_title: str | None = None,
    found_count: int | None = None,
    processed_count: int | None = None,
    failed_count: int | None = None,
    request_ids: list[str] | None = None,
    opened_count: int | None = None,
) -> str:
    if action == "chat_originals_opened":
        return truncate_text(
            f"Chat opened originals for {opened_count or 0} sources (metadata only). "
            f"Finished: {finished_at or started_at}.",
            MAX_META_TEXT_CHARS,
        )

    counts = ""
    if found_count is not None or processed_count is not None or failed_count is not None:
        counts = (
            f" Counts: found={found_count or 0}, processed={processed_count or 0}, "
            f"failed={failed_count or 0}."
        )
    ids = f" Request IDs: {', '.join(request_ids[:MAX_RUN_REQUEST_IDS])}." if request_ids else ""
    return truncate_text(
        f"Run action: {action}. Saved search: {selection_set_title or 'unknown'}. Status: {status}. "
        f"Started: {started_at}. Finished: {finished_at or 'in progress'}.{counts}{ids}",
        MAX_META_TEXT_CHARS,
    )


def parse_selection_set(payload: Any) -> SelectionSetItem | None:
    if not isinstance(payload, dict):
        return None
    set_id = payload.get("id")
    title = payload.get("title")
    source = payload.get("source")
    updated_at = payload.get("updatedAt")
    query = payload.get("query")
    q = query.get("q") if isinstance(query, dict) else payload.get("q")
    if not all(isinstance(v, str) for v in (set_id, title, updated_at, q)) or source not in SOURCES:
        return None
    return SelectionSetItem(
        id=set_id,
        title=title,
        source=source,
        query=q,
        updated_at_iso=updated_at,
        text=selection_set_text(title, source, q, updated_at),
    )


def _parse_selection_set_run(payload: dict[str, Any]) -> RunItem | None:
    selection_set = payload.get("selectionSet")
    result = payload.get("result")
    action = payload.get("action")
    started_at = payload.get("startedAt")
    if action not in ("run", "summarize") or not isinstance(started_at, str):
        return None
    if not isinstance(selection_set, dict) or not isinstance(result, dict):
        return None
    status = result.get("status")
    if status not in ("success", "partial_success", "failed"):
        return None

    request_ids = [r for r in result.get("requestIds") or [] if isinstance(r, str)]
    finished_at = _str_or_none(payload.get("finishedAt"))
    title = _str_or_none(selection_set.get("title"))
    found = _int_or_none(result.get("foundCount"))
    processed = _int_or_none(result.get("processedCount"))
    failed = _int_or_none(result.get("failedCount"))
    return RunItem(
        id=str(payload.get("id") or ""),
        action=action,
        started_at_iso=started_at,
        status=status,
        selection_set_id=_str_or_none(selection_set.get("id")),
        selection_set_title=title,
        finished_at_iso=finished_at,
        found_count=found,
        processed_count=processed,
        failed_count=failed,
        request_ids=tuple(request_ids[:MAX_RUN_REQUEST_IDS]),
        text=run_text(
            action=action,
            status=status,
            started_at=started_at,
            finished_at=finished_at,
            selection_set_title=title,
            found_count=found,
            processed_count=processed,
            failed_count=failed,
            request_ids=request_ids,
        ),
    )


def _parse_chat_originals_run(payload: dict[str, Any], fallback_id: str) -> RunItem | None:
    if payload.get("kind") != "chat_originals_opened":
        return None
    started_at = payload.get("startedAt")
    finished_at = payload.get("finishedAt")
    counts = payload.get("counts")
    raw_status = payload.get("status")
    if not isinstance(started_at, str) or not isinstance(finished_at, str) or not isinstance(counts, dict):
        return None
    if raw_status not in ("success", "partial", "failed"):
        return None

    status = "partial_success" if raw_status == "partial" else raw_status
    opened_count = _int_or_none(counts.get("openedCount")) or 0
    request_ids = [r for r in payload.get("requestIds") or [] if isinstance(r, str)]
    return RunItem(
        id=_str_or_none(payload.get("id")) or fallback_id,
        action="chat_originals_opened",
        started_at_iso=started_at,
        status=status,
        finished_at_iso=finished_at,
        processed_count=opened_count,
        failed_count=opened_count if status == "failed" else 0,
        request_ids=tuple(request_ids[:MAX_RUN_REQUEST_IDS]),
        text=run_text(
            action="chat_originals_opened",
            status=status,
            started_at=started_at,
            finished_at=finished_at,
            opened_count=opened_count,
        ),
    )


def parse_run(payload: Any, fallback_id: str) -> RunItem | None:
    if not isinstance(payload, dict):
        return None
    if payload.get("kind") == "chat_originals_opened":
        return _parse_chat_originals_run(payload, fallback_id)
    run = _parse_selection_set_run(payload)
    if run is not None and not run.id:
        run = replace(run, id=fallback_id)
    return run


class FolderArtifactStore:
    """Summary artifacts stored as JSON files; ``file_id`` is the file path."""

    def __init__(self, *, list_page_size: int = LIST_PAGE_SIZE):
        self.list_page_size = list_page_size

    async def list_summaries(self, folder: str) -> SummaryListing:
        root = Path(folder)

        def list_sync() -> SummaryListing:
            if not root.is_dir():
                return SummaryListing(refs=[], from_index=False)
            index = _read_json(root / INDEX_FILE) if (root / INDEX_FILE).is_file() else None
            if isinstance(index, dict) and isinstance(index.get("summaries"), list):
                refs = []
                for entry in index["summaries"]:
                    if not isinstance(entry, dict):
                        continue
                    name = _str_or_none(entry.get("fileId")) or _str_or_none(entry.get("driveFileId"))
                    if not name:
                        continue
                    refs.append(
                        SummaryRef(
                            file_id=str(root / name),
                            title=_str_or_none(entry.get("title")) or "",
                            source=_str_or_none(entry.get("source")) or "",
                            source_id=_str_or_none(entry.get("sourceId")) or "",
                            updated_at_iso=_str_or_none(entry.get("updatedAtISO"))
                            or _str_or_none(entry.get("createdAtISO")),
                        )
                    )
                return SummaryListing(refs=refs, from_index=True)

            files = [p for p in root.iterdir() if p.is_file() and is_summary_json_file(p.name)]
            refs = [
                SummaryRef(file_id=str(p), updated_at_iso=_mtime_iso(p))
                for p in _sorted_by_mtime(files)[: self.list_page_size]
            ]
            return SummaryListing(refs=refs, from_index=False)

        listing = await _run_blocking("list_summaries", folder, list_sync)
        log_store_operation(
            "list_summaries", folder, "success",
            details=f"{len(listing.refs)} refs, index={listing.from_index}",
        )
        return listing

    async def get(self, file_id: str) -> SummaryArtifact | None:
        path = Path(file_id)

        def read_sync() -> SummaryArtifact | None:
            if not path.is_file():
                return None
            return parse_summary_artifact(_read_json(path), path.name)

        return await _run_blocking("read_summary", file_id, read_sync)


class FolderMetadataStore:
    async def list_selection_sets(self, folder: str) -> list[SelectionSetItem]:
        root = Path(folder)

        def list_sync() -> list[SelectionSetItem]:
            if not root.is_dir():
                return []
            files = [p for p in root.glob("SelectionSet-*.json") if p.is_file()]
            items = [parse_selection_set(_read_json(p)) for p in _sorted_by_mtime(files)[:MAX_SELECTION_SETS]]
            parsed = [item for item in items if item is not None]
            parsed.sort(key=lambda item: _timestamp(item.updated_at_iso), reverse=True)
            return parsed[:MAX_SELECTION_SETS]

        return await _run_blocking("list_selection_sets", folder, list_sync)

    async def list_runs(self, folder: str) -> list[RunItem]:
        root = Path(folder)

        def list_sync() -> list[RunItem]:
            if not root.is_dir():
                return []
            files = [
                p for p in root.iterdir()
                if p.is_file() and p.suffix == ".json" and (p.name.startswith("Run-") or p.name.startswith("ChatRun-"))
            ]
            items = []
            for path in _sorted_by_mtime(files)[:MAX_RECENT_RUNS]:
                fallback_id = re.sub(r"^(Chat)?Run-", "", path.stem)
                run = parse_run(_read_json(path), fallback_id)
                if run is not None:
                    items.append(run)
            items.sort(key=lambda item: _timestamp(item.finished_at_iso or item.started_at_iso), reverse=True)
            return items[:MAX_RECENT_RUNS]

        return await _run_blocking("list_runs", folder, list_sync)

    async def record_originals_opened(self, folder: str, record: OriginalsOpenedRecord) -> None:
        root = Path(folder)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        run_id = f"{stamp}-{record.request_id[:8]}"
        payload = {
            "kind": "chat_originals_opened",
            "version": 1,
            "id": run_id,
            "startedAt": record.started_at_iso,
            "finishedAt": record.finished_at_iso,
            "opened": [
                {"artifactId": ref.artifact_id, "source": ref.source, "sourceId": ref.source_id}
                for ref in record.opened
            ],
            "counts": {"openedCount": len(record.opened), "truncatedCount": record.truncated_count},
            "status": record.status,
            "requestIds": [record.request_id],
        }

        def write_sync() -> None:
            root.mkdir(parents=True, exist_ok=True)
            (root / f"ChatRun-{run_id}.json").write_text(json.dumps(payload, indent=2), encoding="utf-8")

        await _run_blocking("record_originals_opened", folder, write_sync)
        log_store_operation("record_originals_opened", folder, "success", details=run_id)


class FolderOriginalsFetcher:
    def __init__(self, folder: str):
        self.folder = folder

    async def fetch(self, ref: OriginalRef) -> OpenedOriginal:
        safe_id = re.sub(r"[^A-Za-z0-9._-]", "_", ref.source_id)
        path = Path(self.folder) / ORIGINALS_DIR / ref.source / f"{safe_id}.txt"

        def read_sync() -> str | None:
            if not path.is_file():
                return None
            return path.read_text(encoding="utf-8", errors="replace")

        text = await _run_blocking("fetch_original", str(path), read_sync)
        if text is None:
            raise StoreError("fetch_original", f"Original not found for {ref.source}:{ref.source_id}", code="not_found")
        normalized = "\n".join(line.rstrip() for line in text.strip().splitlines())
        return OpenedOriginal(
            artifact_id=ref.artifact_id,
            title=ref.title,
            source=ref.source,
            source_id=ref.source_id,
            text=normalized or "[Original had no extractable text content.]",
            truncated=False,
        )


class FolderSettingsStore:
    async def read(self, folder: str) -> ChatSettings:
        path = Path(folder) / SETTINGS_FILE

        def read_sync() -> Any:
            return _read_json(path) if path.is_file() else None

        payload = await _run_blocking("read_settings", str(path), read_sync)
        if not isinstance(payload, dict):
            return ChatSettings()
        try:
            return ChatSettings.model_validate(payload)
        except ValidationError as exc:
            log_store_operation("read_settings", str(path), "invalid", error=str(exc))
            return ChatSettings()
