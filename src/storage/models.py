"""Pydantic models for the JSON documents shared with the dashboard.

The dashboard owns the on-disk field names (camelCase for subscriptions and
bot state, snake_case for media requests) and writes keys this package does not
know about, so every model keeps unknown fields and serializes back with the
original aliases.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

# =============================================================================
# Enums
# =============================================================================


class SubscriptionStatus(str, Enum):
    """Lifecycle of a subscription record."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class SubscriptionSource(str, Enum):
    """Who created a subscription record."""

    MANUAL = "manual"
    AUTO = "auto"


class MediaStatus(str, Enum):
    """Lifecycle of a media request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    AVAILABLE = "available"


class MediaType(str, Enum):
    """Kind of requested content."""

    MOVIE = "movie"
    TV = "tv"


# =============================================================================
# Helpers
# =============================================================================


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO timestamp written by the dashboard.

    Empty and unparseable values become None so one bad record never breaks a
    whole document. Naive timestamps are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, int | float):
        parsed = datetime.fromtimestamp(value / 1000, tz=UTC)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _lower(value: str | None) -> str:
    return str(value or "").strip().lower()


class DocumentModel(BaseModel):
    """Base for records stored in dashboard documents."""

    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )

    def to_document(self) -> dict[str, Any]:
        """Serialize back to the dashboard's field names.

        Fields never present in the source record are left out so the record
        keeps its original shape.
        """
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


# =============================================================================
# Subscriptions
# =============================================================================


class Subscription(DocumentModel):
    """A payment / subscription record."""

    id: str | None = None
    user_key: str | None = Field(default=None, alias="userKey")
    user_id: str | None = Field(default=None, alias="userId")
    username: str | None = None
    plan_id: str | None = Field(default=None, alias="planId")
    plan_name: str | None = Field(default=None, alias="planName")
    duration_days: int | None = Field(default=None, alias="durationDays")
    price: float | None = None
    currency: str | None = None
    status: str = SubscriptionStatus.PENDING.value
    submitted_at: datetime | None = Field(default=None, alias="submittedAt")
    start_date: datetime | None = Field(default=None, alias="startDate")
    end_date: datetime | None = Field(default=None, alias="endDate")
    approved_at: datetime | None = Field(default=None, alias="approvedAt")
    playback_disabled_at: datetime | None = Field(default=None, alias="playbackDisabledAt")
    source: str | None = None

    @field_validator(
        "submitted_at",
        "start_date",
        "end_date",
        "approved_at",
        "playback_disabled_at",
        mode="before",
    )
    @classmethod
    def _parse_dates(cls, v: Any) -> datetime | None:
        return parse_timestamp(v)

    @field_validator("duration_days", "price", mode="before")
    @classmethod
    def _parse_numbers(cls, v: Any) -> Any:
        if v in (None, ""):
            return None
        try:
            return float(v) if not float(v).is_integer() else int(float(v))
        except (TypeError, ValueError):
            return None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v: Any) -> str:
        return _lower(v) or SubscriptionStatus.PENDING.value

    @property
    def owner_key(self) -> str:
        """Stable owner identity: user id, else user key."""
        return self.user_id or self.user_key or ""

    @property
    def days(self) -> int:
        """Plan duration, falling back to the legacy ``duration`` field."""
        if self.duration_days:
            return int(self.duration_days)
        legacy = (self.model_extra or {}).get("duration")
        try:
            return int(float(legacy or 0))
        except (TypeError, ValueError):
            return 0

    @property
    def slip(self) -> str:
        """Uploaded payment slip: a data URI or a URL."""
        extra = self.model_extra or {}
        return str(extra.get("slipData") or extra.get("slipUrl") or "")

    def belongs_to(self, user_id: str | None, username: str | None) -> bool:
        """Check whether this record belongs to the given upstream user."""
        name = _lower(username)
        if user_id and self.owner_key == user_id:
            return True
        return bool(name) and _lower(self.username) == name

    def is_pending(self) -> bool:
        return self.status == SubscriptionStatus.PENDING.value


# =============================================================================
# Media requests
# =============================================================================


class MediaRequest(DocumentModel):
    """A content request submitted by a user."""

    id: str | None = None
    title: str | None = None
    media_type: str = MediaType.MOVIE.value
    tmdb_id: int | str | None = None
    imdb_id: str | None = None
    poster_path: str | None = None
    poster_url: str | None = None
    language: str | None = None
    requested_by: str | None = None
    requested_by_username: str | None = None
    status: str = MediaStatus.PENDING.value
    jellyseerr_request_id: int | str | None = None
    download_progress: int | None = None
    release_status: str | None = None
    root_folder: str | None = None
    quality_profile: int | None = None
    requested_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("requested_at", "created_at", "updated_at", mode="before")
    @classmethod
    def _parse_dates(cls, v: Any) -> datetime | None:
        return parse_timestamp(v)

    @field_validator("status", "media_type", mode="before")
    @classmethod
    def _normalize_enum_like(cls, v: Any) -> str:
        return _lower(v)

    @field_validator("download_progress", "quality_profile", mode="before")
    @classmethod
    def _parse_optional_int(cls, v: Any) -> int | None:
        if v in (None, ""):
            return None
        try:
            return int(float(v))
        except (TypeError, ValueError):
            return None

    @property
    def display_title(self) -> str:
        return self.title or str((self.model_extra or {}).get("media_title") or "Untitled")

    @property
    def tmdb_number(self) -> int | None:
        """Numeric TMDB id, or None when missing or malformed."""
        try:
            return int(str(self.tmdb_id).strip())
        except (TypeError, ValueError):
            return None

    @property
    def requester(self) -> str:
        """Best available label of who asked for this title."""
        extra = self.model_extra or {}
        for value in (
            self.requested_by_username,
            extra.get("requestedByUsername"),
            extra.get("requestedBy"),
            self.requested_by,
            extra.get("username"),
            extra.get("userId"),
        ):
            if value:
                return str(value)
        return "-"

    @property
    def submitted(self) -> datetime | None:
        return self.requested_at or self.created_at

    @property
    def is_tv(self) -> bool:
        return self.media_type == MediaType.TV.value

    def is_open(self) -> bool:
        """Still waiting for an admin decision."""
        return self.status not in {
            MediaStatus.APPROVED.value,
            MediaStatus.REJECTED.value,
            MediaStatus.AVAILABLE.value,
        }


# =============================================================================
# Unlimited users
# =============================================================================


class UnlimitedUser(DocumentModel):
    """A user granted access regardless of subscription state."""

    key: str | None = None
    user_id: str | None = Field(default=None, alias="userId")
    username: str | None = None

    def matches(self, user_id: str | None, username: str | None) -> bool:
        if user_id and (self.key == user_id or self.user_id == user_id):
            return True
        name = _lower(username)
        return bool(name) and _lower(self.username) == name


# =============================================================================
# Settings document
# =============================================================================


class ServiceSettings(DocumentModel):
    """Admin-edited service endpoints, keys and flags."""

    emby_url: str = Field(default="", alias="embyUrl")
    api_key: str = Field(default="", alias="apiKey")
    jellyseerr_url: str = Field(default="", alias="jellyseerrUrl")
    jellyseerr_api_key: str = Field(default="", alias="jellyseerrApiKey")
    radarr_url: str = Field(default="", alias="radarrUrl")
    radarr_api_key: str = Field(default="", alias="radarrApiKey")
    sonarr_url: str = Field(default="", alias="sonarrUrl")
    sonarr_api_key: str = Field(default="", alias="sonarrApiKey")
    telegram_bot_token: str = Field(default="", alias="telegramBotToken")
    telegram_admin_ids: str = Field(default="", alias="telegramAdminIds")
    disable_auto_trial: bool = Field(default=False, alias="disableAutoTrial")

    @field_validator(
        "emby_url",
        "api_key",
        "jellyseerr_url",
        "jellyseerr_api_key",
        "radarr_url",
        "radarr_api_key",
        "sonarr_url",
        "sonarr_api_key",
        "telegram_bot_token",
        "telegram_admin_ids",
        mode="before",
    )
    @classmethod
    def _strip(cls, v: Any) -> str:
        return str(v or "").strip()

    @property
    def admin_ids(self) -> list[str]:
        return [part.strip() for part in self.telegram_admin_ids.split(",") if part.strip()]


# =============================================================================
# Bot workflow state
# =============================================================================


class MessageRef(DocumentModel):
    """Where a notification was delivered, for later edit-in-place."""

    chat_id: int | str = Field(alias="chatId")
    message_id: int = Field(alias="messageId")
    has_photo: bool = Field(default=False, alias="hasPhoto")


class PendingMediaApproval(DocumentModel):
    """Root folder choices captured when the admin was prompted."""

    request_id: str = Field(alias="requestId")
    roots: list[str] = Field(default_factory=list)
    profile_id: int | None = Field(default=None, alias="profileId")


def _valid_entry(model: type[DocumentModel], value: Any) -> bool:
    if isinstance(value, model):
        return True
    try:
        model.model_validate(value)
    except ValidationError:
        return False
    return True


class WorkflowState(DocumentModel):
    """Durable state of the approval bot."""

    last_update_id: int = Field(default=0, alias="lastUpdateId")
    notified_payments: list[str] = Field(default_factory=list, alias="notifiedPayments")
    notified_media: list[str] = Field(default_factory=list, alias="notifiedMedia")
    notified_expired: list[str] = Field(default_factory=list, alias="notifiedExpired")
    pending_media_approvals: dict[str, PendingMediaApproval] = Field(
        default_factory=dict, alias="pendingMediaApprovals"
    )
    payment_messages: dict[str, list[MessageRef]] = Field(
        default_factory=dict, alias="paymentMessages"
    )

    @field_validator("last_update_id", mode="before")
    @classmethod
    def _repair_cursor(cls, v: Any) -> int:
        return v if isinstance(v, int) and not isinstance(v, bool) else 0

    @field_validator("notified_payments", "notified_media", "notified_expired", mode="before")
    @classmethod
    def _repair_ledger(cls, v: Any) -> list[str]:
        if not isinstance(v, list):
            return []
        return [str(item) for item in v if item not in (None, "")]

    @field_validator("pending_media_approvals", mode="before")
    @classmethod
    def _repair_approvals(cls, v: Any) -> dict:
        if not isinstance(v, dict):
            return {}
        return {
            key: approval
            for key, approval in v.items()
            if _valid_entry(PendingMediaApproval, approval)
        }

    @field_validator("payment_messages", mode="before")
    @classmethod
    def _repair_message_refs(cls, v: Any) -> dict:
        if not isinstance(v, dict):
            return {}
        return {
            key: [ref for ref in refs if _valid_entry(MessageRef, ref)]
            for key, refs in v.items()
            if isinstance(refs, list)
        }

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
