"""
Outbound notification interface.

The engine decides *that* a buyer or seller should hear about an event;
delivery (push, email, SMS) belongs to an external dispatcher. Services
collect :class:`OutboundNotification` records while they hold their
locks and hand them to :func:`dispatch_notifications` only after the
state transition has committed. Delivery is best effort: a failure is
logged and never propagates back into the financial state.

Two dispatchers ship with the engine:

* :class:`LoggingNotificationDispatcher` logs and records every call. It
  is the default when no webhook is configured and is what tests use.
* :class:`WebhookNotificationDispatcher` posts each notification to the
  configured URL, retrying transient failures with ``tenacity`` so that
  delivery is at-least-once from the engine's side.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import asdict, dataclass
from functools import lru_cache
from typing import Iterable, List, Optional

import httpx
import orjson
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import get_settings
from ..schemas import NotificationResult

logger = logging.getLogger(__name__)


class NotificationType(str, enum.Enum):
    outbid = "outbid"
    new_bid = "new_bid"
    reserve_met = "reserve_met"
    auction_won = "auction_won"
    auction_ended = "auction_ended"
    new_offer = "new_offer"
    offer_accepted = "offer_accepted"
    offer_declined = "offer_declined"
    offer_countered = "offer_countered"
    offer_withdrawn = "offer_withdrawn"
    offer_expired = "offer_expired"


@dataclass
class OutboundNotification:
    user_id: str
    type: NotificationType
    title: str
    body: str
    listing_id: Optional[str] = None
    invoice_id: Optional[str] = None
    offer_id: Optional[str] = None
    bid_id: Optional[str] = None


class NotificationDispatcher:
    """Interface of the external notification collaborator."""

    async def send_notification(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        body: str,
        listing_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
        offer_id: Optional[str] = None,
        bid_id: Optional[str] = None,
    ) -> NotificationResult:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Logs each notification and keeps it in ``sent`` for inspection."""

    def __init__(self) -> None:
        self.sent: List[OutboundNotification] = []

    async def send_notification(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        body: str,
        listing_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
        offer_id: Optional[str] = None,
        bid_id: Optional[str] = None,
    ) -> NotificationResult:
        notification = OutboundNotification(
            user_id=user_id,
            type=NotificationType(type),
            title=title,
            body=body,
            listing_id=listing_id,
            invoice_id=invoice_id,
            offer_id=offer_id,
            bid_id=bid_id,
        )
        self.sent.append(notification)
        logger.info("Notification %s -> %s: %s", notification.type.value, user_id, title)
        return NotificationResult(success=True, push_sent=False)

    def of_type(self, type: NotificationType) -> List[OutboundNotification]:
        return [n for n in self.sent if n.type == type]


class WebhookNotificationDispatcher(NotificationDispatcher):
    """Delivers notifications by POSTing JSON to an external service.

    The receiving service answers with ``{"success": bool, "pushSent": bool}``.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        attempts: int = 3,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.attempts = attempts
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send_notification(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        body: str,
        listing_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
        offer_id: Optional[str] = None,
        bid_id: Optional[str] = None,
    ) -> NotificationResult:
        payload = {
            "userId": user_id,
            "type": NotificationType(type).value,
            "title": title,
            "body": body,
            "listingId": listing_id,
            "invoiceId": invoice_id,
            "offerId": offer_id,
            "bidId": bid_id,
        }
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(min=0.5, max=8),
            retry=retry_if_exception_type(httpx.HTTPError),
            reraise=True,
        ):
            with attempt:
                response = await self._client.post(
                    self.url,
                    content=orjson.dumps(payload),
                    headers={"Content-Type": "application/json"},
                )
                response.raise_for_status()
        data = response.json() if response.content else {}
        return NotificationResult(
            success=bool(data.get("success", True)),
            push_sent=bool(data.get("pushSent", False)),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


async def dispatch_notifications(
    dispatcher: NotificationDispatcher,
    notifications: Iterable[OutboundNotification],
) -> int:
    """Send each notification, logging failures. Returns the number delivered.

    Must only be called after the transaction that produced the
    notifications has committed.
    """
    delivered = 0
    for notification in notifications:
        try:
            result = await dispatcher.send_notification(**asdict(notification))
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Notification %s to %s failed: %s",
                notification.type.value,
                notification.user_id,
                exc,
            )
            continue
        if result.success:
            delivered += 1
        else:
            logger.warning(
                "Notification %s to %s was not accepted: %s",
                notification.type.value,
                notification.user_id,
                result.error,
            )
    return delivered


@lru_cache(maxsize=1)
def get_notification_dispatcher() -> NotificationDispatcher:
    """Return the dispatcher selected by the current settings."""
    settings = get_settings()
    if settings.notification_webhook_url:
        return WebhookNotificationDispatcher(
            settings.notification_webhook_url,
            timeout=settings.notification_timeout_seconds,
            attempts=settings.notification_retry_attempts,
        )
    return LoggingNotificationDispatcher()


def format_money(amount) -> str:  # type: ignore[no-untyped-def]
    return f"${amount:,.2f}"
