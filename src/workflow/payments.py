"""Payment decisions.

Approving a payment opens or extends the user's validity window and
supersedes the user's other pending payments, so at most one record per user
ever moves out of ``pending`` into ``approved``.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from src.access.policy import authoritative_subscription
from src.clients.base import NOT_CONFIGURED
from src.clients.factory import ClientFactory
from src.config import settings
from src.storage.documents import DocumentStore, load_subscriptions, save_subscriptions
from src.storage.models import Subscription, SubscriptionStatus
from src.workflow.errors import InvalidStateError, RecordNotFoundError

logger = structlog.get_logger(__name__)


def same_user(target: Subscription, other: Subscription) -> bool:
    """Whether two records belong to the same user (by owner key, else by name)."""
    key = target.owner_key
    if key and (other.user_id == key or other.user_key == key):
        return True
    name = (target.username or "").lower()
    return bool(name) and (other.username or "").lower() == name


def validity_window(
    target: Subscription, related: list[Subscription], now: datetime, default_days: int
) -> tuple[datetime, datetime]:
    """Start and end of the window opened by approving ``target``.

    A still-running subscription is extended from its end date and keeps its
    start date; otherwise the window starts now.
    """
    days = target.days or default_days
    current = authoritative_subscription(related)
    if current is not None and current.end_date is not None and current.end_date >= now:
        start = current.start_date or now
        return start, current.end_date + timedelta(days=days)
    return now, now + timedelta(days=days)


class PaymentService:
    """Applies admin decisions to the subscriptions document."""

    def __init__(
        self,
        store: DocumentStore,
        clock: Callable[[], datetime] | None = None,
        default_days: int | None = None,
    ):
        self.store = store
        self._clock = clock or (lambda: datetime.now(UTC))
        self.default_days = default_days or settings.default_plan_days

    async def get(self, subscription_id: str) -> Subscription:
        for sub in await load_subscriptions(self.store):
            if sub.id == subscription_id:
                return sub
        raise RecordNotFoundError("Payment not found.")

    async def approve(self, subscription_id: str, clients: ClientFactory) -> Subscription:
        """Approve a pending payment and re-enable playback upstream.

        Raises:
            RecordNotFoundError: If the payment does not exist.
            InvalidStateError: If the payment was already decided.
        """
        subscriptions = await load_subscriptions(self.store)
        target = next((sub for sub in subscriptions if sub.id == subscription_id), None)
        if target is None:
            raise RecordNotFoundError("Payment not found.")
        if not target.is_pending():
            raise InvalidStateError("Payment is no longer pending.")

        now = self._clock()
        related = [sub for sub in subscriptions if same_user(target, sub)]
        start, end = validity_window(target, related, now, self.default_days)

        superseded = []
        for sub in related:
            if sub.id != target.id and sub.is_pending():
                sub.status = SubscriptionStatus.REJECTED.value
                superseded.append(sub.id)

        target.status = SubscriptionStatus.APPROVED.value
        target.approved_at = now
        target.start_date = start
        target.end_date = end
        target.playback_disabled_at = None
        await save_subscriptions(self.store, subscriptions)

        logger.info(
            "payment_approved",
            subscription_id=target.id,
            user_id=target.owner_key,
            end_date=end.isoformat(),
            superseded=superseded,
        )

        if target.user_id:
            async with clients.media_server() as media:
                result = await media.set_playback_enabled(target.user_id, True)
            if not result.ok and result.text != NOT_CONFIGURED:
                logger.warning(
                    "playback_enable_failed",
                    user_id=target.user_id,
                    status=result.status,
                    error=result.error,
                )
        return target

    async def reject(self, subscription_id: str) -> Subscription:
        """Reject a payment.

        Raises:
            RecordNotFoundError: If the payment does not exist.
        """
        subscriptions = await load_subscriptions(self.store)
        target = next((sub for sub in subscriptions if sub.id == subscription_id), None)
        if target is None:
            raise RecordNotFoundError("Payment not found.")
        target.status = SubscriptionStatus.REJECTED.value
        await save_subscriptions(self.store, subscriptions)
        logger.info("payment_rejected", subscription_id=target.id, user_id=target.owner_key)
        return target
