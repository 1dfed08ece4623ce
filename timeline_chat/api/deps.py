from __future__ import annotations

import hmac

from timeline_chat.agents.orchestrator import ChatOrchestrator
from timeline_chat.config import settings
from timeline_chat.llm_client import client
from timeline_chat.services.folder_store import (
    FolderArtifactStore,
    FolderMetadataStore,
    FolderOriginalsFetcher,
    FolderSettingsStore,
)


def resolve_folder(header_value: str | None) -> str:
    """Timeline folder for a request: the header when present, else the configured store."""
    folder = (header_value or "").strip()
    return folder or settings.store_dir


def is_admin_token(token: str | None) -> bool:
    if not settings.admin_token or not token:
        return False
    return hmac.compare_digest(token.strip(), settings.admin_token)


def get_settings_store() -> FolderSettingsStore:
    return FolderSettingsStore()


def build_orchestrator(folder: str) -> ChatOrchestrator:
    return ChatOrchestrator(
        artifact_store=FolderArtifactStore(),
        metadata_store=FolderMetadataStore(),
        originals_fetcher=FolderOriginalsFetcher(folder),
        gateway=client(),
    )
