"""Admin notifications for pending payments, pending media requests and expiries.

Each sweep reduces the records to the latest one per user, skips ids already
in the workflow state's dedup ledgers and sends the rest to every admin. An id
enters its ledger only after at least one admin received it, so a total
delivery failure is retried on the next sweep.
"""

from collections.abc import Callable, Iterable
from datetime import UTC, datetime

import structlog
from telegram import InlineKeyboardMarkup, Message

from src.access.policy import authoritative_subscription
from src.clients.jellyseerr import RequestManagerClient
from src.clients.telegram import ChatClient, has_photo
from src.storage.documents import DocumentStore, load_media_requests, load_subscriptions
from src.storage.models import (
    MediaRequest,
    MessageRef,
    ServiceSettings,
    Subscription,
    SubscriptionStatus,
    WorkflowState,
)
from src.workflow.attachments import Attachment, SlipLoader
from src.workflow.messages import (
    expired_user_text,
    media_keyboard,
    media_request_text,
    payment_keyboard,
    payment_pending_text,
)

logger = structlog.get_logger(__name__)

_MIN_TIME = datetime.min.replace(tzinfo=UTC)


def _user_key(sub: Subscription) -> str:
    return sub.owner_key or (sub.username or "").lower()


def _submitted(sub: Subscription) -> datetime:
    return sub.submitted_at or _MIN_TIME


def latest_pending_payments(subscriptions: Iterable[Subscription]) -> list[Subscription]:
    """Newest pending payment of each user, in document order.

    Records without an id cannot be decided by callback and are left out. On
    equal submission times the earlier record wins.
    """
    latest: dict[str, Subscription] = {}
    for sub in subscriptions:
        if not sub.id or not sub.is_pending():
            continue
        key = _user_key(sub)
        current = latest.get(key)
        if current is None or _submitted(sub) > _submitted(current):
            latest[key] = sub
    return list(latest.values())


def latest_pending_media(requests: Iterable[MediaRequest]) -> list[MediaRequest]:
    """Newest open request of each requester, in document order (earlier wins ties)."""
    latest: dict[str, MediaRequest] = {}
    for request in requests:
        if not request.id or not request.is_open():
            continue
        key = request.requester.lower()
        current = latest.get(key)
        if current is None or (request.submitted or _MIN_TIME) > (current.submitted or _MIN_TIME):
            latest[key] = request
    return list(latest.values())


def newly_expired(subscriptions: list[Subscription], now: datetime) -> list[Subscription]:
    """Authoritative subscription of each user whose end date has passed."""
    by_user: dict[str, list[Subscription]] = {}
    for sub in subscriptions:
        by_user.setdefault(_user_key(sub), []).append(sub)

    expired = []
    for records in by_user.values():
        current = authoritative_subscription(records)
        if current is None or current.end_date is None or current.end_date >= now:
            continue
        if current.status in {SubscriptionStatus.APPROVED.value, SubscriptionStatus.EXPIRED.value}:
            expired.append(current)
    return expired


def poster_url(request: MediaRequest, service: ServiceSettings) -> str:
    if request.poster_url:
        return request.poster_url
    extra = request.model_extra or {}
    if extra.get("posterUrl"):
        return str(extra["posterUrl"])
    if request.poster_path:
        return RequestManagerClient(service.jellyseerr_url, "").image_url(request.poster_path)
    return ""


def _message_ref(message: Message, admin_id: str) -> MessageRef:
    return MessageRef(
        chat_id=message.chat_id if message.chat_id is not None else admin_id,
        message_id=message.message_id,
        has_photo=has_photo(message),
    )


class NotificationDispatcher:
    """Sends deduplicated notifications and records where they landed."""

    def __init__(
        self,
        store: DocumentStore,
        chat: ChatClient,
        slips: SlipLoader,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.chat = chat
        self.slips = slips
        self._clock = clock or (lambda: datetime.now(UTC))

    async def sweep(self, state: WorkflowState, service: ServiceSettings) -> None:
        await self.notify_payments(state, service)
        await self.notify_media(state, service)
        await self.notify_expired(state, service)

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def _deliver(
        self,
        admin_id: str,
        text: str,
        keyboard: InlineKeyboardMarkup | None = None,
        attachment: Attachment | None = None,
        photo_url: str = "",
    ) -> Message | None:
        """Send one notification, falling back to plain text when the media upload fails."""
        if attachment is not None and attachment.is_photo:
            result = await self.chat.send_photo(admin_id, attachment.content, text, keyboard)
        elif attachment is not None:
            result = await self.chat.send_document(
                admin_id, attachment.content, attachment.filename, text, keyboard
            )
        elif photo_url:
            result = await self.chat.send_photo(admin_id, photo_url, text, keyboard)
        else:
            result = await self.chat.send_message(admin_id, text, keyboard)

        if not result.ok and (attachment is not None or photo_url):
            logger.warning("notification_media_failed", admin_id=admin_id, error=result.error)
            result = await self.chat.send_message(admin_id, text, keyboard)

        if not result.ok:
            logger.warning("notification_failed", admin_id=admin_id, error=result.error)
            return None
        return result.body if isinstance(result.body, Message) else None

    async def _broadcast(
        self,
        admin_ids: list[str],
        text: str,
        keyboard: InlineKeyboardMarkup | None = None,
        attachment: Attachment | None = None,
        photo_url: str = "",
    ) -> tuple[int, list[MessageRef]]:
        delivered = 0
        refs = []
        for admin_id in admin_ids:
            message = await self._deliver(admin_id, text, keyboard, attachment, photo_url)
            if message is None:
                continue
            delivered += 1
            refs.append(_message_ref(message, admin_id))
        return delivered, refs

    # -------------------------------------------------------------------------
    # Sweeps
    # -------------------------------------------------------------------------

    async def notify_payments(self, state: WorkflowState, service: ServiceSettings) -> int:
        """Notify admins of new pending payments.

        Returns:
            Number of payments notified.
        """
        admin_ids = service.admin_ids
        if not admin_ids:
            return 0
        notified = 0
        for sub in latest_pending_payments(await load_subscriptions(self.store)):
            if sub.id in state.notified_payments:
                continue
            attachment = await self.slips.load(sub.slip)
            delivered, refs = await self._broadcast(
                admin_ids, payment_pending_text(sub), payment_keyboard(sub.id), attachment
            )
            if refs:
                state.payment_messages.setdefault(sub.id, []).extend(refs)
            if delivered:
                state.notified_payments.append(sub.id)
                notified += 1
                logger.info("payment_notified", subscription_id=sub.id, admins=delivered)
        return notified

    async def notify_media(self, state: WorkflowState, service: ServiceSettings) -> int:
        admin_ids = service.admin_ids
        if not admin_ids:
            return 0
        notified = 0
        for request in latest_pending_media(await load_media_requests(self.store)):
            if request.id in state.notified_media:
                continue
            delivered, _ = await self._broadcast(
                admin_ids,
                media_request_text(request),
                media_keyboard(request.id),
                photo_url=poster_url(request, service),
            )
            if delivered:
                state.notified_media.append(request.id)
                notified += 1
                logger.info("media_request_notified", request_id=request.id, admins=delivered)
        return notified

    async def notify_expired(self, state: WorkflowState, service: ServiceSettings) -> int:
        """Notify admins once per expired subscription record.

        The ledger holds the authoritative record's id, so a user who renews
        and expires again is reported again.
        """
        admin_ids = service.admin_ids
        if not admin_ids:
            return 0
        notified = 0
        subscriptions = await load_subscriptions(self.store)
        for sub in newly_expired(subscriptions, self._clock()):
            if not sub.id or sub.id in state.notified_expired:
                continue
            delivered, _ = await self._broadcast(admin_ids, expired_user_text(sub))
            if delivered:
                state.notified_expired.append(sub.id)
                notified += 1
                logger.info("expiry_notified", subscription_id=sub.id, user_id=sub.owner_key)
        return notified
