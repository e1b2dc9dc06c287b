"""Whole-document storage shared with the dashboard.

Every document is read and replaced as a whole; there is no locking and the
last writer wins. The store is kept behind a tiny ``get`` / ``put`` interface
so the reconciler and the bot never touch files directly.

Usage:
    store = JsonFileStore(settings.data_dir)
    subs = await load_subscriptions(store)
    subs[0].status = "approved"
    await save_subscriptions(store, subs)
"""

import asyncio
import copy
import json
import os
import tempfile
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from src.storage.models import (
    MediaRequest,
    ServiceSettings,
    Subscription,
    UnlimitedUser,
    WorkflowState,
)

logger = structlog.get_logger(__name__)


class DocumentKey(str, Enum):
    """Documents known to the control plane."""

    SETTINGS = "settings"
    SUBSCRIPTIONS = "subscriptions"
    MEDIA_REQUESTS = "media-requests"
    UNLIMITED_USERS = "unlimited-users"
    USER_TAGS = "user-tags"
    MOVIE_REQUESTS = "movie-requests"
    WORKFLOW_STATE = "telegram-state"


DEFAULT_DOCUMENTS: dict[DocumentKey, Any] = {
    DocumentKey.SETTINGS: {},
    DocumentKey.SUBSCRIPTIONS: [],
    DocumentKey.MEDIA_REQUESTS: [],
    DocumentKey.UNLIMITED_USERS: [],
    DocumentKey.USER_TAGS: {},
    DocumentKey.MOVIE_REQUESTS: [],
    DocumentKey.WORKFLOW_STATE: {},
}


class DocumentStoreError(Exception):
    """Raised when a document cannot be written."""

    pass


class DocumentStore(ABC):
    """Key-value contract over whole documents."""

    @abstractmethod
    async def get(self, key: DocumentKey) -> Any:
        """Return the current document, or its default when absent."""
        pass

    @abstractmethod
    async def put(self, key: DocumentKey, document: Any) -> None:
        """Replace the document.

        Raises:
            DocumentStoreError: If the document could not be written.
        """
        pass

    def path_for(self, key: DocumentKey) -> Path | None:
        """Filesystem location backing the document, if any (used for change watching)."""
        return None


class JsonFileStore(DocumentStore):
    """One pretty-printed JSON file per document inside ``base_dir``."""

    def __init__(self, base_dir: Path | str):
        self.base_dir = Path(base_dir)

    def path_for(self, key: DocumentKey) -> Path:
        return self.base_dir / f"{key.value}.json"

    def _read(self, key: DocumentKey) -> Any:
        path = self.path_for(key)
        default = copy.deepcopy(DEFAULT_DOCUMENTS[key])
        if not path.exists():
            return default
        try:
            raw = path.read_text(encoding="utf-8")
            if not raw.strip():
                return default
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("document_unreadable", document=key.value, error=str(e))
            return default
        if not isinstance(data, type(default)):
            logger.warning(
                "document_wrong_shape",
                document=key.value,
                expected=type(default).__name__,
                got=type(data).__name__,
            )
            return default
        return data

    def _write(self, key: DocumentKey, document: Any) -> None:
        path = self.path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(document, f, indent=2, ensure_ascii=False)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise DocumentStoreError(f"Failed to write {path}: {e}") from e

    async def get(self, key: DocumentKey) -> Any:
        return await asyncio.to_thread(self._read, key)

    async def put(self, key: DocumentKey, document: Any) -> None:
        await asyncio.to_thread(self._write, key, document)


# =============================================================================
# Typed accessors
# =============================================================================


def _is_valid(model: type, item: Any) -> bool:
    if not isinstance(item, dict):
        return False
    try:
        model.model_validate(item)
    except ValidationError:
        return False
    return True


def _parse_records(key: DocumentKey, raw: list, model: type) -> list:
    records = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            records.append(model.model_validate(item))
        except ValidationError as e:
            logger.warning(
                "document_record_skipped",
                document=key.value,
                record_id=item.get("id"),
                error=str(e),
            )
    return records


async def _save_records(store: DocumentStore, key: DocumentKey, model: type, records: list) -> None:
    """Replace a record list, carrying over stored items that do not parse.

    Skipped items were never loaded, so writing only ``records`` would erase
    them. They are appended unchanged after the typed records.
    """
    unparsed = [item for item in await store.get(key) if not _is_valid(model, item)]
    if unparsed:
        logger.info("document_records_carried_over", document=key.value, count=len(unparsed))
    await store.put(key, [record.to_document() for record in records] + unparsed)


async def load_settings(store: DocumentStore) -> ServiceSettings:
    raw = await store.get(DocumentKey.SETTINGS)
    try:
        return ServiceSettings.model_validate(raw)
    except ValidationError as e:
        logger.warning("settings_invalid", error=str(e))
        return ServiceSettings()


async def load_subscriptions(store: DocumentStore) -> list[Subscription]:
    raw = await store.get(DocumentKey.SUBSCRIPTIONS)
    return _parse_records(DocumentKey.SUBSCRIPTIONS, raw, Subscription)


async def save_subscriptions(store: DocumentStore, subscriptions: list[Subscription]) -> None:
    await _save_records(store, DocumentKey.SUBSCRIPTIONS, Subscription, subscriptions)


async def load_media_requests(store: DocumentStore) -> list[MediaRequest]:
    raw = await store.get(DocumentKey.MEDIA_REQUESTS)
    return _parse_records(DocumentKey.MEDIA_REQUESTS, raw, MediaRequest)


async def save_media_requests(store: DocumentStore, requests: list[MediaRequest]) -> None:
    await _save_records(store, DocumentKey.MEDIA_REQUESTS, MediaRequest, requests)


async def load_unlimited_users(store: DocumentStore) -> list[UnlimitedUser]:
    raw = await store.get(DocumentKey.UNLIMITED_USERS)
    return _parse_records(DocumentKey.UNLIMITED_USERS, raw, UnlimitedUser)


async def save_unlimited_users(store: DocumentStore, users: list[UnlimitedUser]) -> None:
    await _save_records(store, DocumentKey.UNLIMITED_USERS, UnlimitedUser, users)


async def load_workflow_state(store: DocumentStore) -> WorkflowState:
    """Load bot state, repairing a malformed document to its default shape."""
    raw = await store.get(DocumentKey.WORKFLOW_STATE)
    try:
        return WorkflowState.model_validate(raw)
    except ValidationError as e:
        logger.warning("workflow_state_reset", error=str(e))
        return WorkflowState()


async def save_workflow_state(store: DocumentStore, state: WorkflowState) -> bool:
    """Persist bot state.

    The state only records dedup and prompt bookkeeping that can be rebuilt,
    so a failed write is logged and reported, never raised.
    """
    try:
        await store.put(DocumentKey.WORKFLOW_STATE, state.to_document())
        return True
    except DocumentStoreError as e:
        logger.error("workflow_state_save_failed", error=str(e))
        return False
