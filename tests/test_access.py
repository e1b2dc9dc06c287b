"""Tests for the access policy module.

Tests cover:
- Authoritative subscription selection and status
- Library layout and target policy derivation
- The reconciler against a fake media server (prune, trials, policies, playback)
- Sync triggers
"""

import asyncio
import json
from datetime import UTC, date, datetime
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest
from conftest import SERVICE_SETTINGS, read_document, write_document

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
)
from src.access.reconciler import TRIAL_PLAN_NAME, AccessReconciler, ReconcileReport
from src.access.scheduler import PolicySyncScheduler
from src.clients.factory import ClientFactory
from src.storage.documents import DocumentKey, JsonFileStore
from src.storage.models import Subscription, UnlimitedUser

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)

LIBRARIES = [
    {"Name": "Movies", "Guid": "g1"},
    {"Name": "Subscription", "Guid": "g2"},
    {"Name": "TV", "Id": "i3"},
]


def sub(sub_id: str, **fields: Any) -> Subscription:
    return Subscription.model_validate({"id": sub_id, **fields})


# =============================================================================
# Policy derivation
# =============================================================================


class TestAuthoritativeSubscription:
    """Tests for choosing the record that decides a user's status."""

    def test_latest_end_date_wins(self):
        older = sub("a", endDate="2024-02-01T00:00:00Z")
        newer = sub("b", endDate="2024-04-01T00:00:00Z")
        assert authoritative_subscription([newer, older]).id == "b"

    def test_records_without_end_date_never_decide(self):
        approved = sub("a", status="approved", endDate="2024-02-01T00:00:00Z")
        pending = sub("b", status="pending", submittedAt="2024-05-01T00:00:00Z")
        assert authoritative_subscription([approved, pending]).id == "a"
        assert authoritative_subscription([pending]) is None

    def test_tie_goes_to_later_submission(self):
        first = sub("a", endDate="2024-04-01T00:00:00Z", submittedAt="2024-01-02T00:00:00Z")
        second = sub("b", endDate="2024-04-01T00:00:00Z", submittedAt="2024-01-01T00:00:00Z")
        assert authoritative_subscription([first, second]).id == "a"

    def test_full_tie_goes_to_later_position(self):
        first = sub("a", endDate="2024-04-01T00:00:00Z")
        second = sub("b", endDate="2024-04-01T00:00:00Z")
        assert latest_subscription([first, second]).id == "b"


class TestSubscriptionStatus:
    """Tests for subscription_status."""

    def test_ends_today_is_active(self):
        records = [sub("a", endDate="2024-03-01T00:00:00Z")]
        assert subscription_status(records, today=date(2024, 3, 1)) == AccessStatus.ACTIVE

    def test_ended_yesterday_is_expired(self):
        records = [sub("a", endDate="2024-02-29T23:59:00Z")]
        assert subscription_status(records, today=date(2024, 3, 1)) == AccessStatus.EXPIRED

    def test_no_records_is_expired(self):
        assert subscription_status([], today=date(2024, 3, 1)) == AccessStatus.EXPIRED


class TestUserFlags:
    """Tests for admin and unlimited detection."""

    def test_is_admin(self):
        assert is_admin({"Policy": {"IsAdministrator": True}})
        assert is_admin({"Configuration": {"IsAdministrator": True}})
        assert not is_admin({"Policy": {"IsAdministrator": "yes"}})

    def test_is_unlimited(self):
        entries = [UnlimitedUser.model_validate({"key": "u1"})]
        assert is_unlimited({"Id": "u1", "Name": "x"}, entries)
        assert is_unlimited({"Id": "u2", "Name": "Root"}, [], allow_list={"root"})
        assert not is_unlimited({"Id": "u2", "Name": "bob"}, entries)


class TestPolicy:
    """Tests for layout and target policy."""

    def test_layout(self):
        layout = LibraryLayout.from_folders(LIBRARIES + ["junk", {"Name": "NoId"}])
        assert layout.library_ids == ["g1", "g2", "i3"]
        assert layout.subscription_library_id == "g2"
        assert layout.content_library_ids == ["g1", "i3"]

    def test_entitled_policy(self):
        layout = LibraryLayout.from_folders(LIBRARIES)
        assert build_target_policy(layout, True) == {
            "EnableAllFolders": False,
            "EnabledFolders": ["g1", "i3"],
            "EnableAllChannels": True,
            "EnabledChannels": [],
        }

    def test_restricted_policy(self):
        layout = LibraryLayout.from_folders(LIBRARIES)
        target = build_target_policy(layout, False)
        assert target["EnabledFolders"] == ["g2"]
        assert target["EnableAllChannels"] is False

    def test_restricted_without_subscription_library(self):
        layout = LibraryLayout.from_folders([{"Name": "Movies", "Id": "m"}])
        assert build_target_policy(layout, False)["EnabledFolders"] == []

    def test_needs_update_ignores_order(self):
        target = {
            "EnableAllFolders": False,
            "EnabledFolders": ["a", "b"],
            "EnableAllChannels": True,
            "EnabledChannels": [],
        }
        current = {**target, "EnabledFolders": ["b", "a"], "Other": 1}
        assert not policy_needs_update(current, target)
        assert policy_needs_update({**current, "EnableAllFolders": True}, target)
        assert policy_needs_update({}, target)

    def test_merge_keeps_unowned_fields(self):
        merged = merge_policy({"IsHidden": True, "EnableMediaPlayback": False}, {"A": 1})
        assert merged == {"IsHidden": True, "EnableMediaPlayback": True, "A": 1}


# =============================================================================
# Reconciler
# =============================================================================


class FakeMediaServer:
    """Emby stand-in that applies policy writes to its users."""

    def __init__(self, users: list[dict[str, Any]], libraries: list[dict[str, Any]]):
        self.users = {user["Id"]: user for user in users}
        self.libraries = libraries
        self.policy_writes: list[tuple[str, dict]] = []
        self.failing_users: set[str] = set()
        self.library_status = 200

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/Library/SelectableMediaFolders":
            return httpx.Response(self.library_status, json=self.libraries)
        if path == "/Users":
            return httpx.Response(200, json=list(self.users.values()))
        parts = path.strip("/").split("/")
        user = self.users.get(parts[1])
        if user is None:
            return httpx.Response(404, text="Not found")
        if len(parts) == 2:
            return httpx.Response(200, json=user)
        if request.method != "POST":
            return httpx.Response(405, text="Method not allowed")
        if user["Id"] in self.failing_users:
            return httpx.Response(500, text="boom")
        policy = json.loads(request.content)
        user["Policy"] = policy
        self.policy_writes.append((user["Id"], policy))
        return httpx.Response(204)

    def reconciler(self, store: JsonFileStore, **kwargs: Any) -> AccessReconciler:
        transport = httpx.MockTransport(self.handle)
        return AccessReconciler(
            store,
            media_client_factory=lambda service: ClientFactory(
                service, transport=transport
            ).media_server(),
            clock=lambda: NOW,
            trial_days=7,
            allow_list=set(),
            disable_playback_on_expiry=True,
            **kwargs,
        )


def media_users() -> list[dict[str, Any]]:
    return [
        {
            "Id": "admin-id",
            "Name": "admin",
            "Policy": {"IsAdministrator": True, "EnableAllFolders": True},
        },
        {"Id": "alice-id", "Name": "alice", "Policy": {}},
        {"Id": "bob-id", "Name": "bob", "Policy": {"EnableAllFolders": True}},
        {"Id": "carol-id", "Name": "carol", "Policy": {}},
        {"Id": "dave-id", "Name": "dave", "Policy": {}},
    ]


@pytest.fixture
def seeded_store(store: JsonFileStore) -> JsonFileStore:
    write_document(store, DocumentKey.SETTINGS, SERVICE_SETTINGS)
    write_document(
        store,
        DocumentKey.SUBSCRIPTIONS,
        [
            {
                "id": "s-alice",
                "userId": "alice-id",
                "username": "alice",
                "status": "approved",
                "endDate": "2024-03-20T00:00:00Z",
            },
            {
                "id": "s-bob",
                "userId": "bob-id",
                "username": "bob",
                "status": "approved",
                "endDate": "2024-02-20T00:00:00Z",
            },
            {"id": "s-ghost", "userId": "ghost-id", "username": "ghost", "status": "pending"},
        ],
    )
    write_document(
        store,
        DocumentKey.UNLIMITED_USERS,
        [
            {"key": "dave-id", "userId": "dave-id", "username": "dave"},
            {"key": "gone", "username": "gone"},
        ],
    )
    write_document(store, DocumentKey.USER_TAGS, {"alice-id": ["vip"], "ghost-id": ["x"]})
    write_document(
        store, DocumentKey.MOVIE_REQUESTS, [{"requestedBy": "alice"}, {"requestedBy": "ghost"}]
    )
    return store


class TestAccessReconciler:
    """Tests for AccessReconciler."""

    async def test_full_run(self, seeded_store: JsonFileStore):
        server = FakeMediaServer(media_users(), LIBRARIES)
        report = await server.reconciler(seeded_store).reconcile()

        assert report.pruned == {
            "subscriptions": 1,
            "unlimited_users": 1,
            "user_tags": 1,
            "movie_requests": 1,
        }
        assert report.trials_issued == ["carol-id"]
        assert set(report.policies_updated) == {
            "admin-id",
            "alice-id",
            "bob-id",
            "carol-id",
            "dave-id",
        }
        assert report.playback_disabled == ["bob-id"]

        users = server.users
        assert sorted(users["alice-id"]["Policy"]["EnabledFolders"]) == ["g1", "i3"]
        assert sorted(users["carol-id"]["Policy"]["EnabledFolders"]) == ["g1", "i3"]
        assert sorted(users["dave-id"]["Policy"]["EnabledFolders"]) == ["g1", "i3"]
        assert users["bob-id"]["Policy"]["EnabledFolders"] == ["g2"]
        assert users["bob-id"]["Policy"]["EnableMediaPlayback"] is False
        assert users["admin-id"]["Policy"]["IsAdministrator"] is True

        subs = {item["id"]: item for item in read_document(seeded_store, DocumentKey.SUBSCRIPTIONS)}
        assert "s-ghost" not in subs
        assert subs["s-bob"]["playbackDisabledAt"].startswith("2024-03-01T12:00")
        trial = next(item for item in subs.values() if item.get("userId") == "carol-id")
        assert trial["source"] == "auto"
        assert trial["status"] == "approved"
        assert trial["planName"] == TRIAL_PLAN_NAME
        assert trial["planId"] == "auto-trial-7"
        assert trial["endDate"].startswith("2024-03-08T12:00")

        assert read_document(seeded_store, DocumentKey.USER_TAGS) == {"alice-id": ["vip"]}
        assert read_document(seeded_store, DocumentKey.MOVIE_REQUESTS) == [
            {"requestedBy": "alice"}
        ]

    async def test_second_run_is_idempotent(self, seeded_store: JsonFileStore):
        server = FakeMediaServer(media_users(), LIBRARIES)
        reconciler = server.reconciler(seeded_store)
        await reconciler.reconcile()
        writes = len(server.policy_writes)
        subscriptions = read_document(seeded_store, DocumentKey.SUBSCRIPTIONS)

        report = await reconciler.reconcile()

        assert report.changed is False
        assert report.trials_issued == []
        assert len(server.policy_writes) == writes
        assert read_document(seeded_store, DocumentKey.SUBSCRIPTIONS) == subscriptions

    async def test_trial_issued_once_even_after_expiry(self, store: JsonFileStore):
        write_document(store, DocumentKey.SETTINGS, SERVICE_SETTINGS)
        write_document(
            store,
            DocumentKey.SUBSCRIPTIONS,
            [
                {
                    "id": "old-trial",
                    "userId": "carol-id",
                    "username": "carol",
                    "status": "approved",
                    "source": "auto",
                    "endDate": "2023-01-08T00:00:00Z",
                }
            ],
        )
        server = FakeMediaServer([{"Id": "carol-id", "Name": "carol", "Policy": {}}], LIBRARIES)
        report = await server.reconciler(store).reconcile()
        assert report.trials_issued == []
        assert server.users["carol-id"]["Policy"]["EnabledFolders"] == ["g2"]

    async def test_rejected_record_blocks_trial(self, store: JsonFileStore):
        write_document(store, DocumentKey.SETTINGS, SERVICE_SETTINGS)
        write_document(
            store,
            DocumentKey.SUBSCRIPTIONS,
            [{"id": "s1", "userId": "carol-id", "username": "carol", "status": "rejected"}],
        )
        server = FakeMediaServer([{"Id": "carol-id", "Name": "carol", "Policy": {}}], LIBRARIES)
        report = await server.reconciler(store).reconcile()
        assert report.trials_issued == []
        assert len(read_document(store, DocumentKey.SUBSCRIPTIONS)) == 1
        assert server.users["carol-id"]["Policy"]["EnabledFolders"] == ["g2"]

    async def test_username_only_record_blocks_trial(self, store: JsonFileStore):
        write_document(store, DocumentKey.SETTINGS, SERVICE_SETTINGS)
        write_document(
            store,
            DocumentKey.SUBSCRIPTIONS,
            [{"id": "s1", "username": "Carol", "status": "pending"}],
        )
        server = FakeMediaServer([{"Id": "carol-id", "Name": "carol", "Policy": {}}], LIBRARIES)
        report = await server.reconciler(store).reconcile()
        assert report.trials_issued == []
        assert read_document(store, DocumentKey.SUBSCRIPTIONS) == [
            {"id": "s1", "username": "Carol", "status": "pending"}
        ]

    async def test_record_without_id_counts(self, store: JsonFileStore):
        record = {"userId": "alice-id", "status": "approved", "endDate": "2024-03-20T00:00:00Z"}
        write_document(store, DocumentKey.SETTINGS, SERVICE_SETTINGS)
        write_document(store, DocumentKey.SUBSCRIPTIONS, [record])
        server = FakeMediaServer([{"Id": "alice-id", "Name": "alice", "Policy": {}}], LIBRARIES)
        report = await server.reconciler(store).reconcile()
        assert report.trials_issued == []
        assert sorted(server.users["alice-id"]["Policy"]["EnabledFolders"]) == ["g1", "i3"]
        assert read_document(store, DocumentKey.SUBSCRIPTIONS) == [record]

    async def test_unparsed_record_survives_trial_write(self, store: JsonFileStore):
        broken = {"id": "s1", "userId": "alice-id", "username": ["alice"]}
        write_document(store, DocumentKey.SETTINGS, SERVICE_SETTINGS)
        write_document(store, DocumentKey.SUBSCRIPTIONS, [broken])
        server = FakeMediaServer([{"Id": "carol-id", "Name": "carol", "Policy": {}}], LIBRARIES)
        report = await server.reconciler(store).reconcile()
        assert report.trials_issued == ["carol-id"]
        saved = read_document(store, DocumentKey.SUBSCRIPTIONS)
        assert saved[-1] == broken
        assert saved[0]["userId"] == "carol-id"

    async def test_auto_trial_disabled(self, store: JsonFileStore):
        write_document(store, DocumentKey.SETTINGS, {**SERVICE_SETTINGS, "disableAutoTrial": True})
        server = FakeMediaServer([{"Id": "carol-id", "Name": "carol", "Policy": {}}], LIBRARIES)
        report = await server.reconciler(store).reconcile()
        assert report.trials_issued == []
        assert not store.path_for(DocumentKey.SUBSCRIPTIONS).exists()
        assert server.users["carol-id"]["Policy"]["EnabledFolders"] == ["g2"]

    async def test_unconfigured_is_skipped(self, store: JsonFileStore):
        server = FakeMediaServer(media_users(), LIBRARIES)
        report = await server.reconciler(store).reconcile()
        assert report.skipped
        assert server.policy_writes == []

    async def test_library_failure_aborts(self, seeded_store: JsonFileStore):
        server = FakeMediaServer(media_users(), LIBRARIES)
        server.library_status = 500
        report = await server.reconciler(seeded_store).reconcile()
        assert report.aborted
        assert server.policy_writes == []
        assert len(read_document(seeded_store, DocumentKey.SUBSCRIPTIONS)) == 3

    async def test_policy_failure_skips_playback_step(self, seeded_store: JsonFileStore):
        server = FakeMediaServer(media_users(), LIBRARIES)
        server.failing_users.add("bob-id")
        report = await server.reconciler(seeded_store).reconcile()
        assert report.policy_failures == ["bob-id"]
        assert report.playback_disabled == []
        assert "alice-id" in report.policies_updated

    async def test_playback_marker_not_repeated(self, seeded_store: JsonFileStore):
        server = FakeMediaServer(media_users(), LIBRARIES)
        reconciler = server.reconciler(seeded_store)
        await reconciler.reconcile()
        server.users["bob-id"]["Policy"]["EnableMediaPlayback"] = True
        report = await reconciler.reconcile()
        assert report.playback_disabled == []

    async def test_playback_kept_when_disabled_by_setting(self, seeded_store: JsonFileStore):
        server = FakeMediaServer(media_users(), LIBRARIES)
        transport = httpx.MockTransport(server.handle)
        reconciler = AccessReconciler(
            seeded_store,
            media_client_factory=lambda service: ClientFactory(
                service, transport=transport
            ).media_server(),
            clock=lambda: NOW,
            allow_list=set(),
            disable_playback_on_expiry=False,
        )
        report = await reconciler.reconcile()
        assert report.playback_disabled == []
        assert server.users["bob-id"]["Policy"]["EnabledFolders"] == ["g2"]

    async def test_allow_list_grants_access(self, seeded_store: JsonFileStore):
        server = FakeMediaServer(media_users(), LIBRARIES)
        transport = httpx.MockTransport(server.handle)
        reconciler = AccessReconciler(
            seeded_store,
            media_client_factory=lambda service: ClientFactory(
                service, transport=transport
            ).media_server(),
            clock=lambda: NOW,
            allow_list={"bob"},
        )
        report = await reconciler.reconcile()
        assert "bob-id" not in report.playback_disabled
        assert sorted(server.users["bob-id"]["Policy"]["EnabledFolders"]) == ["g1", "i3"]


# =============================================================================
# Scheduler
# =============================================================================


class TestPolicySyncScheduler:
    """Tests for PolicySyncScheduler triggers."""

    async def test_requests_are_debounced(self, store: JsonFileStore):
        reconciler = AsyncMock()
        reconciler.reconcile.return_value = ReconcileReport()
        scheduler = PolicySyncScheduler(
            reconciler, store, interval_seconds=60, debounce_seconds=0.02
        )
        for _ in range(3):
            scheduler.request_sync()
        await asyncio.sleep(0.1)
        assert reconciler.reconcile.await_count == 1

    async def test_failed_run_returns_none(self, store: JsonFileStore):
        reconciler = AsyncMock()
        reconciler.reconcile.side_effect = RuntimeError("boom")
        scheduler = PolicySyncScheduler(reconciler, store, interval_seconds=60)
        assert await scheduler.run_once() is None

    async def test_runs_never_overlap(self, store: JsonFileStore):
        active = 0
        peak = 0

        async def slow_reconcile() -> ReconcileReport:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1
            return ReconcileReport()

        reconciler = AsyncMock()
        reconciler.reconcile.side_effect = slow_reconcile
        scheduler = PolicySyncScheduler(reconciler, store, interval_seconds=60)
        await asyncio.gather(scheduler.run_once(), scheduler.run_once(), scheduler.run_once())
        assert peak == 1
        assert reconciler.reconcile.await_count == 3

    async def test_start_runs_immediately(self, store: JsonFileStore):
        reconciler = AsyncMock()
        reconciler.reconcile.return_value = ReconcileReport()
        scheduler = PolicySyncScheduler(reconciler, store, interval_seconds=60)
        scheduler.start()
        assert scheduler.is_running
        await asyncio.sleep(0.3)
        await scheduler.stop()
        assert not scheduler.is_running
        assert reconciler.reconcile.await_count >= 1

    async def test_document_change_triggers_sync(self, store: JsonFileStore):
        reconciler = AsyncMock()
        reconciler.reconcile.return_value = ReconcileReport()
        scheduler = PolicySyncScheduler(
            reconciler, store, interval_seconds=60, debounce_seconds=0.01
        )
        scheduler._on_document_change(store.path_for(DocumentKey.SUBSCRIPTIONS))
        await asyncio.sleep(0.05)
        assert reconciler.reconcile.await_count == 1
