"""Library access policy derivation.

Pure functions: given the upstream user object, the library list and the
local subscription / unlimited-user records, decide which libraries a user may
see and whether the upstream policy already says so.

The media server keeps a library named "subscription" that holds the
"please subscribe" content. Entitled users see every library except that one;
everybody else sees only that one.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from src.storage.models import Subscription, UnlimitedUser

SUBSCRIPTION_LIBRARY_NAME = "subscription"

_MIN_TIME = datetime.min.replace(tzinfo=UTC)


class AccessStatus(str, Enum):
    """Whether a user's paid access is currently running."""

    ACTIVE = "active"
    EXPIRED = "expired"


# =============================================================================
# Upstream user helpers
# =============================================================================


def user_id_of(user: dict[str, Any]) -> str:
    return str(user.get("Id") or user.get("id") or "")


def username_of(user: dict[str, Any]) -> str:
    return str(user.get("Name") or user.get("name") or "")


def is_admin(user: dict[str, Any]) -> bool:
    """Administrators on the media server are always entitled."""
    policy = user.get("Policy") or {}
    configuration = user.get("Configuration") or {}
    return policy.get("IsAdministrator") is True or configuration.get("IsAdministrator") is True


def is_unlimited(
    user: dict[str, Any],
    unlimited_users: Iterable[UnlimitedUser],
    allow_list: Iterable[str] = (),
) -> bool:
    """Check the unlimited-user records and the configured username allow-list."""
    user_id = user_id_of(user)
    name = username_of(user).lower()
    if name and name in {entry.lower() for entry in allow_list}:
        return True
    return any(entry.matches(user_id, name) for entry in unlimited_users)


# =============================================================================
# Subscription status
# =============================================================================


def subscriptions_for(
    subscriptions: Iterable[Subscription], user_id: str | None, username: str | None
) -> list[Subscription]:
    return [sub for sub in subscriptions if sub.belongs_to(user_id, username)]


def _rank(sub: Subscription) -> tuple[datetime, datetime]:
    return (sub.end_date or sub.submitted_at or _MIN_TIME, sub.submitted_at or _MIN_TIME)


def latest_subscription(subscriptions: Iterable[Subscription]) -> Subscription | None:
    """Most recent record: by end date, else by submission time.

    Ties go to the later ``submittedAt``, then to the later position in the
    document.
    """
    latest = None
    for sub in subscriptions:
        if latest is None or _rank(sub) >= _rank(latest):
            latest = sub
    return latest


def authoritative_subscription(subscriptions: Iterable[Subscription]) -> Subscription | None:
    """Record that decides the current status: the latest one with an end date.

    Records without an end date (pending, rejected before approval) never
    decide status. Between equal end dates the later submission wins.
    """
    return latest_subscription(sub for sub in subscriptions if sub.end_date is not None)


def subscription_status(
    subscriptions: Iterable[Subscription], today: date | None = None
) -> AccessStatus:
    """Active when the authoritative record ends today or later (UTC calendar dates)."""
    current = authoritative_subscription(subscriptions)
    if current is None or current.end_date is None:
        return AccessStatus.EXPIRED
    today = today or datetime.now(UTC).date()
    end_day = current.end_date.astimezone(UTC).date()
    return AccessStatus.ACTIVE if end_day >= today else AccessStatus.EXPIRED


# =============================================================================
# Policy
# =============================================================================


@dataclass
class LibraryLayout:
    """Library ids known to the media server, with the subscription library split out."""

    library_ids: list[str] = field(default_factory=list)
    subscription_library_id: str | None = None

    @classmethod
    def from_folders(cls, folders: Iterable[Any]) -> "LibraryLayout":
        layout = cls()
        for folder in folders:
            if not isinstance(folder, dict):
                continue
            folder_id = str(folder.get("Guid") or folder.get("Id") or "")
            if not folder_id:
                continue
            layout.library_ids.append(folder_id)
            name = str(folder.get("Name") or "").strip().lower()
            if name == SUBSCRIPTION_LIBRARY_NAME and layout.subscription_library_id is None:
                layout.subscription_library_id = folder_id
        return layout

    @property
    def content_library_ids(self) -> list[str]:
        return [lib for lib in self.library_ids if lib != self.subscription_library_id]


def build_target_policy(layout: LibraryLayout, entitled: bool) -> dict[str, Any]:
    """Policy fields the reconciler owns for one user."""
    if entitled:
        return {
            "EnableAllFolders": False,
            "EnabledFolders": layout.content_library_ids,
            "EnableAllChannels": True,
            "EnabledChannels": [],
        }
    return {
        "EnableAllFolders": False,
        "EnabledFolders": (
            [layout.subscription_library_id] if layout.subscription_library_id else []
        ),
        "EnableAllChannels": False,
        "EnabledChannels": [],
    }


def _id_set(value: Any) -> set[str]:
    if not isinstance(value, list):
        return set()
    return {str(item) for item in value if item}


def policy_needs_update(current: dict[str, Any], target: dict[str, Any]) -> bool:
    """Compare the owned fields; list order is irrelevant."""
    for flag in ("EnableAllFolders", "EnableAllChannels"):
        if bool(current.get(flag)) != bool(target.get(flag)):
            return True
    for ids in ("EnabledFolders", "EnabledChannels"):
        if _id_set(current.get(ids)) != _id_set(target.get(ids)):
            return True
    return False


def merge_policy(current: dict[str, Any], target: dict[str, Any]) -> dict[str, Any]:
    """Overlay the owned fields on the full upstream policy, re-enabling playback."""
    return {**current, "EnableMediaPlayback": True, **target}
