"""Document storage module.

Provides:
- Whole-document JSON storage shared with the dashboard
- Typed pydantic models for subscriptions, media requests and bot state
- File change watching with debouncing

Usage:
    from src.storage import JsonFileStore, load_subscriptions

    store = JsonFileStore(settings.data_dir)
    subscriptions = await load_subscriptions(store)
"""

from src.storage.documents import (
    DocumentKey,
    DocumentStore,
    DocumentStoreError,
    JsonFileStore,
    load_media_requests,
    load_settings,
    load_subscriptions,
    load_unlimited_users,
    load_workflow_state,
    save_media_requests,
    save_subscriptions,
    save_unlimited_users,
    save_workflow_state,
)
from src.storage.models import (
    MediaRequest,
    MediaStatus,
    MediaType,
    MessageRef,
    PendingMediaApproval,
    ServiceSettings,
    Subscription,
    SubscriptionSource,
    SubscriptionStatus,
    UnlimitedUser,
    WorkflowState,
)
from src.storage.watcher import Debouncer, DocumentWatcher

__all__ = [
    "Debouncer",
    "DocumentKey",
    "DocumentStore",
    "DocumentStoreError",
    "DocumentWatcher",
    "JsonFileStore",
    "MediaRequest",
    "MediaStatus",
    "MediaType",
    "MessageRef",
    "PendingMediaApproval",
    "ServiceSettings",
    "Subscription",
    "SubscriptionSource",
    "SubscriptionStatus",
    "UnlimitedUser",
    "WorkflowState",
    "load_media_requests",
    "load_settings",
    "load_subscriptions",
    "load_unlimited_users",
    "load_workflow_state",
    "save_media_requests",
    "save_subscriptions",
    "save_unlimited_users",
    "save_workflow_state",
]
