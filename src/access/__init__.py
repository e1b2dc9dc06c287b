"""Access policy module.

Provides:
- Pure policy derivation from subscription and unlimited-user records
- The reconciler that prunes, issues trials and pushes policies
- Trigger scheduling (start, interval, debounced document changes)

Usage:
    from src.access import AccessReconciler, PolicySyncScheduler

    reconciler = AccessReconciler(store)
    scheduler = PolicySyncScheduler(reconciler, store)
    scheduler.start()
"""

from src.access.policy import (
    AccessStatus,
    LibraryLayout,
    authoritative_subscription,
    build_target_policy,
    is_admin,
    is_unlimited,
    latest_subscription,
    merge_policy,
    policy_needs_update,
    subscription_status,
    subscriptions_for,
)
from src.access.reconciler import AccessReconciler, ReconcileReport
from src.access.scheduler import PolicySyncScheduler

__all__ = [
    "AccessReconciler",
    "AccessStatus",
    "LibraryLayout",
    "PolicySyncScheduler",
    "ReconcileReport",
    "authoritative_subscription",
    "build_target_policy",
    "is_admin",
    "is_unlimited",
    "latest_subscription",
    "merge_policy",
    "policy_needs_update",
    "subscription_status",
    "subscriptions_for",
]
