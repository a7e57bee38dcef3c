"""
Offer negotiation state machine.

An offer chain starts with a buyer's offer on a listing and grows one
node per counter. Nodes alternate authorship: even ``counter_count``
nodes are the buyer's, odd ones the seller's. Only the newest node of a
chain can be ``pending``; the party who did not author it may accept,
reject or counter it. Only the buyer may withdraw, whichever side made
the pending node.

Every action runs under the listing lock and then the chain lock, reads
the node with ``SELECT ... FOR UPDATE`` and commits as one transaction.
Countering therefore closes the old node and opens the new one
atomically. Accepting an offer sells the listing, rejects every other
pending offer on it and issues the invoice in the same transaction.

A pending node past its ``expires_at`` is treated as expired the moment
anyone touches it, even before the expiry sweep gets to it.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from ..events import emit_event
from ..locks import chain_key, get_lock_registry, invoice_key, listing_key
from ..models import EventType, Listing, ListingStatus, Offer, OfferStatus, SaleSource, new_id
from ..schemas import OfferActionResult, OfferOut, SweepItem, SweepReport
from ..utils.clock import utcnow
from .commissions import get_platform_settings, to_money
from .listings import lock_listing
from .notifications import (
    NotificationDispatcher,
    NotificationType,
    OutboundNotification,
    dispatch_notifications,
    format_money,
)
from .settlement import invoice_notifications, issue_invoice

logger = logging.getLogger(__name__)

Notifications = List[OutboundNotification]


async def _expiry(db: AsyncSession, now: datetime) -> datetime:
    platform = await get_platform_settings(db)
    return now + timedelta(hours=platform.offer_expiry_hours)


async def get_offer(db: AsyncSession, offer_id: str) -> Offer:
    offer = await db.get(Offer, offer_id)
    if offer is None:
        raise NotFoundError(f"Offer {offer_id} not found")
    return offer


async def get_offer_chain(db: AsyncSession, offer_id: str) -> List[Offer]:
    """Return the whole negotiation chain containing ``offer_id``, head first."""
    offer = await get_offer(db, offer_id)
    stmt = (
        select(Offer)
        .where(Offer.root_offer_id == offer.root_offer_id)
        .order_by(Offer.counter_count)
    )
    return list((await db.execute(stmt)).scalars().all())


async def list_offers(db: AsyncSession, listing_id: str, status: Optional[OfferStatus] = None) -> List[Offer]:
    stmt = select(Offer).where(Offer.listing_id == listing_id)
    if status is not None:
        stmt = stmt.where(Offer.status == status)
    return list((await db.execute(stmt.order_by(Offer.created_at))).scalars().all())


async def create_offer(
    db: AsyncSession,
    dispatcher: NotificationDispatcher,
    listing_id: str,
    buyer_id: str,
    amount: Decimal,
    message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> OfferActionResult:
    """Open a new negotiation chain with a buyer's offer.

    An offer at or above the listing's auto-accept price is accepted on
    the spot and settled; one below its auto-decline price is refused.
    """
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("Offer amount must be positive")
    now = now or utcnow()
    settings = get_settings()
    invoice_id: Optional[str] = None

    async with get_lock_registry().hold(listing_key(listing_id)):
        try:
            listing = await lock_listing(db, listing_id)
            if not listing.accept_offers:
                raise ValidationError("This listing does not accept offers")
            if listing.status is not ListingStatus.active:
                raise ConflictError(f"Listing is {listing.status.value}, not accepting offers")
            if listing.seller_id == buyer_id:
                raise ValidationError("You cannot make an offer on your own listing")

            pending = await db.scalar(
                select(func.count())
                .select_from(Offer)
                .where(
                    Offer.listing_id == listing_id,
                    Offer.buyer_id == buyer_id,
                    Offer.status == OfferStatus.pending,
                )
            )
            if pending:
                raise ConflictError("You already have a pending offer on this listing")
            chains = await db.scalar(
                select(func.count())
                .select_from(Offer)
                .where(Offer.listing_id == listing_id, Offer.buyer_id == buyer_id, Offer.counter_count == 0)
            )
            if chains >= settings.max_offers_per_buyer:
                raise ValidationError(
                    f"You can make at most {settings.max_offers_per_buyer} offers on this listing"
                )
            if listing.auto_decline_price is not None and amount < listing.auto_decline_price:
                raise ValidationError("This offer is below the minimum the seller will consider")

            offer_id = new_id()
            offer = Offer(
                id=offer_id,
                listing_id=listing_id,
                buyer_id=buyer_id,
                seller_id=listing.seller_id,
                amount=amount,
                message=message,
                status=OfferStatus.pending,
                root_offer_id=offer_id,
                counter_count=0,
                expires_at=await _expiry(db, now),
                created_at=now,
            )
            db.add(offer)
            emit_event(
                db,
                EventType.offer_created,
                actor_id=buyer_id,
                listing_id=listing_id,
                offer_id=offer_id,
                payload={"amount": str(amount)},
            )

            if listing.auto_accept_price is not None and amount >= listing.auto_accept_price:
                invoice_id, notifications = await _accept(db, listing, offer, None, now)
                logger.info("Offer %s auto-accepted on listing %s", offer_id, listing_id)
            else:
                notifications = [
                    OutboundNotification(
                        user_id=listing.seller_id,
                        type=NotificationType.new_offer,
                        title="New offer received",
                        body=f'You received an offer of {format_money(amount)} on "{listing.title}"',
                        listing_id=listing_id,
                        offer_id=offer_id,
                    )
                ]
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    logger.info("Offer %s created on listing %s by %s for %s", offer_id, listing_id, buyer_id, amount)
    await dispatch_notifications(dispatcher, notifications)
    return OfferActionResult(offer=OfferOut.model_validate(offer), invoice_id=invoice_id)


async def _accept(
    db: AsyncSession,
    listing: Listing,
    offer: Offer,
    actor_id: Optional[str],
    now: datetime,
) -> Tuple[str, Notifications]:
    """Accept ``offer``, sell the listing and stage the invoice.

    The caller holds the listing and chain locks and commits.
    """
    offer.status = OfferStatus.accepted
    offer.responded_at = now
    listing.status = ListingStatus.sold
    listing.ended_at = now
    await db.flush()

    others = list(
        (
            await db.execute(
                select(Offer).where(
                    Offer.listing_id == listing.id,
                    Offer.status == OfferStatus.pending,
                    Offer.id != offer.id,
                )
            )
        )
        .scalars()
        .all()
    )
    if others:
        await db.execute(
            update(Offer)
            .where(Offer.id.in_([o.id for o in others]), Offer.status == OfferStatus.pending)
            .values(status=OfferStatus.rejected, responded_at=now)
            .execution_options(synchronize_session=False)
        )

    emit_event(
        db,
        EventType.offer_accepted,
        actor_id=actor_id,
        listing_id=listing.id,
        offer_id=offer.id,
        payload={"amount": str(offer.amount), "rejected_offers": [o.id for o in others]},
    )
    async with get_lock_registry().hold(invoice_key(listing.id, listing.seller_id)):
        invoice, created = await issue_invoice(
            db,
            listing.id,
            listing.seller_id,
            offer.buyer_id,
            offer.amount,
            SaleSource.offer,
            offer_id=offer.id,
            now=now,
        )
        await db.flush()

    notifications = invoice_notifications(invoice, listing.title) if created else []
    notifications.extend(
        OutboundNotification(
            user_id=other.buyer_id,
            type=NotificationType.offer_declined,
            title="Offer declined",
            body=f'"{listing.title}" has been sold to another buyer.',
            listing_id=listing.id,
            offer_id=other.id,
        )
        for other in others
    )
    return invoice.id, notifications


async def _chain_keys(db: AsyncSession, offer_id: str) -> Tuple[str, str]:
    """Look up which locks guard ``offer_id`` and end the read transaction."""
    row = (
        await db.execute(select(Offer.listing_id, Offer.root_offer_id).where(Offer.id == offer_id))
    ).first()
    await db.commit()
    if row is None:
        raise NotFoundError(f"Offer {offer_id} not found")
    return row.listing_id, row.root_offer_id


async def _lock_offer(db: AsyncSession, offer_id: str) -> Offer:
    stmt = (
        select(Offer)
        .where(Offer.id == offer_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    offer = (await db.execute(stmt)).scalar_one_or_none()
    if offer is None:
        raise NotFoundError(f"Offer {offer_id} not found")
    return offer


async def _ensure_open(db: AsyncSession, offer: Offer, now: datetime) -> None:
    if offer.status is not OfferStatus.pending:
        raise ConflictError(f"Offer is already {offer.status.value}")
    if offer.expires_at <= now:
        offer.status = OfferStatus.expired
        emit_event(db, EventType.offer_expired, listing_id=offer.listing_id, offer_id=offer.id)
        await db.commit()
        logger.info("Offer %s expired on access", offer.id)
        raise ConflictError("This offer has expired")


def _check_responder(offer: Offer, actor_id: str) -> None:
    if actor_id != offer.responder_id:
        raise PermissionDeniedError("Only the other party can respond to this offer")


async def accept_offer(
    db: AsyncSession,
    dispatcher: NotificationDispatcher,
    offer_id: str,
    actor_id: str,
    now: Optional[datetime] = None,
) -> OfferActionResult:
    """Accept a pending offer, selling the listing at the offered amount."""
    now = now or utcnow()
    listing_id, root_id = await _chain_keys(db, offer_id)
    async with get_lock_registry().hold(listing_key(listing_id)):
        async with get_lock_registry().hold(chain_key(root_id)):
            try:
                listing = await lock_listing(db, listing_id)
                offer = await _lock_offer(db, offer_id)
                _check_responder(offer, actor_id)
                await _ensure_open(db, offer, now)
                if listing.status is not ListingStatus.active:
                    raise ConflictError(f"Listing is {listing.status.value}")
                invoice_id, notifications = await _accept(db, listing, offer, actor_id, now)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    logger.info("Offer %s accepted by %s; invoice %s", offer_id, actor_id, invoice_id)
    await dispatch_notifications(dispatcher, notifications)
    return OfferActionResult(offer=OfferOut.model_validate(offer), invoice_id=invoice_id)


async def reject_offer(
    db: AsyncSession,
    dispatcher: NotificationDispatcher,
    offer_id: str,
    actor_id: str,
    now: Optional[datetime] = None,
) -> OfferActionResult:
    now = now or utcnow()
    listing_id, root_id = await _chain_keys(db, offer_id)
    async with get_lock_registry().hold(listing_key(listing_id)):
        async with get_lock_registry().hold(chain_key(root_id)):
            try:
                listing = await lock_listing(db, listing_id)
                offer = await _lock_offer(db, offer_id)
                _check_responder(offer, actor_id)
                await _ensure_open(db, offer, now)
                offer.status = OfferStatus.rejected
                offer.responded_at = now
                emit_event(db, EventType.offer_rejected, actor_id=actor_id, listing_id=listing_id, offer_id=offer_id)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    await dispatch_notifications(
        dispatcher,
        [
            OutboundNotification(
                user_id=offer.author_id,
                type=NotificationType.offer_declined,
                title="Offer declined",
                body=f'Your offer of {format_money(offer.amount)} on "{listing.title}" was declined.',
                listing_id=listing_id,
                offer_id=offer_id,
            )
        ],
    )
    return OfferActionResult(offer=OfferOut.model_validate(offer))


async def counter_offer(
    db: AsyncSession,
    dispatcher: NotificationDispatcher,
    offer_id: str,
    actor_id: str,
    new_amount: Decimal,
    message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> OfferActionResult:
    """Replace a pending offer with a counter-offer from the other party."""
    amount = to_money(new_amount)
    if amount <= 0:
        raise ValidationError("Counter-offer amount must be positive")
    now = now or utcnow()
    max_counters = get_settings().max_counter_offers
    listing_id, root_id = await _chain_keys(db, offer_id)
    async with get_lock_registry().hold(listing_key(listing_id)):
        async with get_lock_registry().hold(chain_key(root_id)):
            try:
                listing = await lock_listing(db, listing_id)
                offer = await _lock_offer(db, offer_id)
                _check_responder(offer, actor_id)
                await _ensure_open(db, offer, now)
                if listing.status is not ListingStatus.active:
                    raise ConflictError(f"Listing is {listing.status.value}")
                if amount == offer.amount:
                    raise ValidationError("Counter-offer must differ from the current amount")
                if max_counters is not None and offer.counter_count >= max_counters:
                    raise ValidationError(f"No more than {max_counters} counter-offers are allowed")

                offer.status = OfferStatus.countered
                offer.responded_at = now
                counter = Offer(
                    listing_id=listing_id,
                    buyer_id=offer.buyer_id,
                    seller_id=offer.seller_id,
                    amount=amount,
                    message=message,
                    status=OfferStatus.pending,
                    parent_offer_id=offer.id,
                    root_offer_id=offer.root_offer_id,
                    counter_count=offer.counter_count + 1,
                    expires_at=await _expiry(db, now),
                    created_at=now,
                )
                db.add(counter)
                await db.flush()
                emit_event(
                    db,
                    EventType.offer_countered,
                    actor_id=actor_id,
                    listing_id=listing_id,
                    offer_id=counter.id,
                    payload={"parent_offer_id": offer.id, "amount": str(amount)},
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    logger.info("Offer %s countered by %s with %s (%s)", offer_id, actor_id, amount, counter.id)
    await dispatch_notifications(
        dispatcher,
        [
            OutboundNotification(
                user_id=offer.author_id,
                type=NotificationType.offer_countered,
                title="Counter-offer received",
                body=f'You received a counter-offer of {format_money(amount)} on "{listing.title}"',
                listing_id=listing_id,
                offer_id=counter.id,
            )
        ],
    )
    return OfferActionResult(offer=OfferOut.model_validate(offer), counter_offer=OfferOut.model_validate(counter))


async def withdraw_offer(
    db: AsyncSession,
    dispatcher: NotificationDispatcher,
    offer_id: str,
    actor_id: str,
    now: Optional[datetime] = None,
) -> OfferActionResult:
    now = now or utcnow()
    listing_id, root_id = await _chain_keys(db, offer_id)
    async with get_lock_registry().hold(listing_key(listing_id)):
        async with get_lock_registry().hold(chain_key(root_id)):
            try:
                listing = await lock_listing(db, listing_id)
                offer = await _lock_offer(db, offer_id)
                if actor_id != offer.buyer_id:
                    raise PermissionDeniedError("Only the buyer can withdraw this offer")
                await _ensure_open(db, offer, now)
                offer.status = OfferStatus.withdrawn
                offer.responded_at = now
                emit_event(db, EventType.offer_withdrawn, actor_id=actor_id, listing_id=listing_id, offer_id=offer_id)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    await dispatch_notifications(
        dispatcher,
        [
            OutboundNotification(
                user_id=offer.seller_id,
                type=NotificationType.offer_withdrawn,
                title="Offer withdrawn",
                body=f'An offer of {format_money(offer.amount)} on "{listing.title}" was withdrawn.',
                listing_id=listing_id,
                offer_id=offer_id,
            )
        ],
    )
    return OfferActionResult(offer=OfferOut.model_validate(offer))


async def expire_offers(
    db: AsyncSession,
    dispatcher: NotificationDispatcher,
    now: Optional[datetime] = None,
) -> SweepReport:
    """Expire every pending offer whose deadline has passed."""
    now = now or utcnow()
    report = SweepReport()
    notifications: Notifications = []
    try:
        due = list(
            (
                await db.execute(
                    select(Offer.id).where(Offer.status == OfferStatus.pending, Offer.expires_at <= now)
                )
            )
            .scalars()
            .all()
        )
        for offer_id in due:
            result = await db.execute(
                update(Offer)
                .where(Offer.id == offer_id, Offer.status == OfferStatus.pending, Offer.expires_at <= now)
                .values(status=OfferStatus.expired)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                continue
            offer = await db.get(Offer, offer_id, populate_existing=True)
            listing = await db.get(Listing, offer.listing_id)
            emit_event(db, EventType.offer_expired, listing_id=offer.listing_id, offer_id=offer_id)
            report.items.append(SweepItem(id=offer_id, outcome="expired"))
            report.processed += 1
            for user_id in (offer.buyer_id, offer.seller_id):
                notifications.append(
                    OutboundNotification(
                        user_id=user_id,
                        type=NotificationType.offer_expired,
                        title="Offer expired",
                        body=f'The offer of {format_money(offer.amount)} on "{listing.title}" has expired.',
                        listing_id=offer.listing_id,
                        offer_id=offer_id,
                    )
                )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    if report.processed:
        logger.info("Expired %d offers", report.processed)
    await dispatch_notifications(dispatcher, notifications)
    return report
