"""Access policy reconciler.

One ``reconcile()`` run brings every media server account in line with the
local records:

1. list libraries and users upstream (either failing aborts the run)
2. prune local records that reference deleted accounts
3. issue a one-time trial to accounts without any subscription history
4. derive each account's target policy and write it only when it differs
5. switch off playback for accounts whose subscription just ran out

Usage:
    reconciler = AccessReconciler(JsonFileStore(settings.data_dir))
    report = await reconciler.reconcile()
"""

import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from src.access.policy import (
    AccessStatus,
    LibraryLayout,
    authoritative_subscription,
    build_target_policy,
    is_admin,
    is_unlimited,
    merge_policy,
    policy_needs_update,
    subscription_status,
    subscriptions_for,
    user_id_of,
    username_of,
)
from src.clients.emby import MediaServerClient
from src.clients.factory import ClientFactory
from src.config import settings
from src.storage.documents import (
    DocumentKey,
    DocumentStore,
    load_settings,
    load_subscriptions,
    load_unlimited_users,
    save_subscriptions,
    save_unlimited_users,
)
from src.storage.models import (
    ServiceSettings,
    Subscription,
    SubscriptionSource,
    SubscriptionStatus,
    UnlimitedUser,
)

logger = structlog.get_logger(__name__)

TRIAL_PLAN_NAME = "Auto Trial"
TRIAL_CURRENCY = "MVR"


def trial_plan_id(days: int) -> str:
    return f"auto-trial-{days}"


def new_record_id(now: datetime) -> str:
    """Record id in the dashboard's format: epoch millis plus a random hex suffix."""
    return f"{int(now.timestamp() * 1000)}-{secrets.token_hex(6)}"


@dataclass
class ReconcileReport:
    """What one reconcile run did."""

    skipped: bool = False
    aborted: bool = False
    pruned: dict[str, int] = field(default_factory=dict)
    trials_issued: list[str] = field(default_factory=list)
    policies_updated: list[str] = field(default_factory=list)
    policy_failures: list[str] = field(default_factory=list)
    playback_disabled: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(
            any(self.pruned.values())
            or self.trials_issued
            or self.policies_updated
            or self.playback_disabled
        )


def default_media_client(service: ServiceSettings) -> MediaServerClient:
    return ClientFactory(service).media_server()


class UpstreamDirectory:
    """Ids and lowercase names of the accounts that exist upstream."""

    def __init__(self, users: list[dict[str, Any]]):
        self.ids = {user_id_of(user) for user in users} - {""}
        self.names = {username_of(user).lower() for user in users} - {""}

    def knows_id(self, value: str | None) -> bool:
        return bool(value) and value in self.ids

    def knows_name(self, value: str | None) -> bool:
        return bool(value) and str(value).lower() in self.names

    def keeps_subscription(self, sub: Subscription) -> bool:
        if sub.user_id:
            return self.knows_id(sub.user_id)
        # userKey falls back to the username when the account had no stable id
        if sub.user_key:
            return self.knows_id(sub.user_key) or self.knows_name(sub.user_key)
        return not sub.username or self.knows_name(sub.username)

    def keeps_unlimited(self, entry: UnlimitedUser) -> bool:
        if entry.user_id:
            return self.knows_id(entry.user_id)
        # Name-only entries carry the lowercase username as their key
        if not entry.key and not entry.username:
            return True
        return (
            self.knows_id(entry.key)
            or self.knows_name(entry.key)
            or self.knows_name(entry.username)
        )

    def keeps_tag(self, key: str) -> bool:
        return self.knows_id(key) or self.knows_name(key)

    def keeps_movie_request(self, item: Any) -> bool:
        if not isinstance(item, dict):
            return True
        requested_by = str(item.get("requestedBy") or "")
        return not requested_by or self.knows_name(requested_by)


class AccessReconciler:
    """Derives and pushes library access policies from local records."""

    def __init__(
        self,
        store: DocumentStore,
        media_client_factory: Callable[[ServiceSettings], MediaServerClient] = default_media_client,
        clock: Callable[[], datetime] | None = None,
        trial_days: int | None = None,
        allow_list: set[str] | None = None,
        disable_playback_on_expiry: bool | None = None,
    ):
        """Initialize the reconciler.

        Args:
            store: Document store shared with the dashboard.
            media_client_factory: Builds the media server client from the settings document.
            clock: Returns the current UTC time (tests pin it).
            trial_days: Length of automatic trials.
            allow_list: Lowercase usernames that are always unlimited.
            disable_playback_on_expiry: Switch off playback once a subscription ends.
        """
        self.store = store
        self._client_factory = media_client_factory
        self._clock = clock or (lambda: datetime.now(UTC))
        self.trial_days = trial_days or settings.trial_days
        self.allow_list = allow_list if allow_list is not None else settings.unlimited_usernames
        self.disable_playback_on_expiry = (
            settings.disable_playback_on_expiry
            if disable_playback_on_expiry is None
            else disable_playback_on_expiry
        )

    async def reconcile(self) -> ReconcileReport:
        report = ReconcileReport()
        service = await load_settings(self.store)

        async with self._client_factory(service) as media:
            if not media.configured:
                logger.debug("policy_sync_skipped_unconfigured")
                report.skipped = True
                return report

            libraries = await media.list_libraries()
            if not libraries.ok or not isinstance(libraries.body, list):
                logger.error(
                    "policy_sync_libraries_failed",
                    status=libraries.status,
                    error=libraries.error,
                )
                report.aborted = True
                return report

            users_result = await media.list_users()
            if not users_result.ok or not isinstance(users_result.body, list):
                logger.error(
                    "policy_sync_users_failed",
                    status=users_result.status,
                    error=users_result.error,
                )
                report.aborted = True
                return report

            users = [user for user in users_result.body if isinstance(user, dict)]
            layout = LibraryLayout.from_folders(libraries.body)
            directory = UpstreamDirectory(users)

            subscriptions, unlimited = await self._prune(directory, report)
            await self._issue_trials(users, subscriptions, unlimited, service, report)
            await self._apply_policies(media, users, subscriptions, unlimited, layout, report)

        if report.changed or report.policy_failures:
            logger.info(
                "policy_sync_completed",
                pruned=report.pruned,
                trials=len(report.trials_issued),
                updated=len(report.policies_updated),
                failed=len(report.policy_failures),
                playback_disabled=len(report.playback_disabled),
            )
        return report

    # -------------------------------------------------------------------------
    # Prune
    # -------------------------------------------------------------------------

    async def _prune(
        self, directory: UpstreamDirectory, report: ReconcileReport
    ) -> tuple[list[Subscription], list[UnlimitedUser]]:
        """Drop records of deleted accounts; only changed documents are written."""
        subscriptions = await load_subscriptions(self.store)
        kept_subs = [sub for sub in subscriptions if directory.keeps_subscription(sub)]
        report.pruned["subscriptions"] = len(subscriptions) - len(kept_subs)
        if report.pruned["subscriptions"]:
            await save_subscriptions(self.store, kept_subs)

        unlimited = await load_unlimited_users(self.store)
        kept_unlimited = [entry for entry in unlimited if directory.keeps_unlimited(entry)]
        report.pruned["unlimited_users"] = len(unlimited) - len(kept_unlimited)
        if report.pruned["unlimited_users"]:
            await save_unlimited_users(self.store, kept_unlimited)

        tags = await self.store.get(DocumentKey.USER_TAGS)
        kept_tags = {key: value for key, value in tags.items() if directory.keeps_tag(key)}
        report.pruned["user_tags"] = len(tags) - len(kept_tags)
        if report.pruned["user_tags"]:
            await self.store.put(DocumentKey.USER_TAGS, kept_tags)

        movie_requests = await self.store.get(DocumentKey.MOVIE_REQUESTS)
        kept_requests = [item for item in movie_requests if directory.keeps_movie_request(item)]
        report.pruned["movie_requests"] = len(movie_requests) - len(kept_requests)
        if report.pruned["movie_requests"]:
            await self.store.put(DocumentKey.MOVIE_REQUESTS, kept_requests)

        if any(report.pruned.values()):
            logger.info("policy_sync_pruned_deleted_users", **report.pruned)
        return kept_subs, kept_unlimited

    # -------------------------------------------------------------------------
    # Trials
    # -------------------------------------------------------------------------

    def build_trial(self, user: dict[str, Any], now: datetime) -> Subscription:
        user_id = user_id_of(user)
        return Subscription.model_validate(
            {
                "id": new_record_id(now),
                "userKey": user_id,
                "userId": user_id,
                "username": username_of(user) or "Unknown",
                "planId": trial_plan_id(self.trial_days),
                "planName": TRIAL_PLAN_NAME,
                "durationDays": self.trial_days,
                "price": 0,
                "currency": TRIAL_CURRENCY,
                "status": SubscriptionStatus.APPROVED.value,
                "submittedAt": now,
                "startDate": now,
                "endDate": now + timedelta(days=self.trial_days),
                "source": SubscriptionSource.AUTO.value,
            }
        )

    async def _issue_trials(
        self,
        users: list[dict[str, Any]],
        subscriptions: list[Subscription],
        unlimited: list[UnlimitedUser],
        service: ServiceSettings,
        report: ReconcileReport,
    ) -> None:
        if service.disable_auto_trial:
            return
        now = self._clock()
        for user in users:
            user_id = user_id_of(user)
            if not user_id or is_admin(user) or is_unlimited(user, unlimited, self.allow_list):
                continue
            if subscriptions_for(subscriptions, user_id, username_of(user)):
                continue
            trial = self.build_trial(user, now)
            subscriptions.append(trial)
            report.trials_issued.append(user_id)
            logger.info(
                "trial_issued", user_id=user_id, username=trial.username, days=self.trial_days
            )
        if report.trials_issued:
            await save_subscriptions(self.store, subscriptions)

    # -------------------------------------------------------------------------
    # Policies
    # -------------------------------------------------------------------------

    async def _apply_policies(
        self,
        media: MediaServerClient,
        users: list[dict[str, Any]],
        subscriptions: list[Subscription],
        unlimited: list[UnlimitedUser],
        layout: LibraryLayout,
        report: ReconcileReport,
    ) -> None:
        now = self._clock()
        marked = False
        for user in users:
            user_id = user_id_of(user)
            if not user_id:
                continue
            username = username_of(user)
            owned = subscriptions_for(subscriptions, user_id, username)
            status = subscription_status(owned, today=now.date())
            entitled = (
                is_unlimited(user, unlimited, self.allow_list)
                or is_admin(user)
                or status == AccessStatus.ACTIVE
            )

            current = user.get("Policy") if isinstance(user.get("Policy"), dict) else {}
            target = build_target_policy(layout, entitled)
            if policy_needs_update(current, target):
                result = await media.update_policy(user_id, merge_policy(current, target))
                if result.ok:
                    report.policies_updated.append(user_id)
                    logger.info("policy_updated", user_id=user_id, entitled=entitled)
                else:
                    report.policy_failures.append(user_id)
                    logger.warning(
                        "policy_update_failed",
                        user_id=user_id,
                        status=result.status,
                        error=result.error,
                    )
                    continue

            if entitled or not self.disable_playback_on_expiry:
                continue
            current_sub = authoritative_subscription(owned)
            if (
                current_sub is None
                or current_sub.end_date is None
                or current_sub.end_date >= now
                or current_sub.playback_disabled_at is not None
            ):
                continue
            result = await media.set_playback_enabled(user_id, False)
            if not result.ok:
                logger.warning("playback_disable_failed", user_id=user_id, error=result.error)
                continue
            current_sub.playback_disabled_at = now
            marked = True
            report.playback_disabled.append(user_id)
            logger.info("playback_disabled", user_id=user_id, subscription_id=current_sub.id)

        if marked:
            await save_subscriptions(self.store, subscriptions)
