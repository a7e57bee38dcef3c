"""
Auction clock: soft close, end-time overrides and the closing sweep.

Closing an auction is a two-step affair. The sweep first *claims* a
listing with a compare-and-set update (``active -> processing``) and
commits the claim, so that a second sweep in another process skips it.
It then resolves the claimed listing under the listing lock: the winning
bid becomes an invoice in the same transaction that marks the listing
``sold``, or the listing becomes ``unsold``. A failure releases the
claim. A claim left behind by a crashed worker is reclaimed once it is
older than ``sweep_claim_ttl_seconds``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import ColumnElement, and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..errors import ConflictError, ValidationError
from ..events import emit_event
from ..locks import get_lock_registry, invoice_key, listing_key
from ..models import BidStatus, EventType, Listing, ListingStatus, ListingType, PlatformSettings, SaleSource
from ..schemas import SweepItem, SweepReport
from ..utils.clock import utcnow
from .listings import get_active_bid, load_ledger, lock_listing
from .notifications import (
    NotificationDispatcher,
    NotificationType,
    OutboundNotification,
    dispatch_notifications,
    format_money,
)
from .settlement import invoice_notifications, issue_invoice

BIDDABLE_TYPES = (ListingType.auction, ListingType.hybrid)

logger = logging.getLogger(__name__)


def apply_soft_close(listing: Listing, settings: PlatformSettings, now: datetime) -> bool:
    """Extend ``listing.end_time`` when a bid lands inside the closing window.

    Returns whether the end time moved. The end time never moves backward
    here; the first end time is kept in ``original_end_time``.
    """
    if listing.end_time is None or listing.end_time <= now:
        return False
    extension = timedelta(minutes=settings.auction_extension_minutes)
    if extension <= timedelta(0) or listing.end_time - now > extension:
        return False
    new_end = max(listing.end_time, now + extension)
    if new_end == listing.end_time:
        return False
    if listing.original_end_time is None:
        listing.original_end_time = listing.end_time
    listing.end_time = new_end
    logger.info("Soft close extended listing %s to %s", listing.id, new_end.isoformat())
    return True


async def override_end_time(
    db: AsyncSession,
    listing_id: str,
    new_end_time: datetime,
    actor_id: Optional[str] = None,
) -> Listing:
    """Set a listing's end time administratively, earlier or later."""
    async with get_lock_registry().hold(listing_key(listing_id)):
        try:
            listing = await lock_listing(db, listing_id)
            if listing.listing_type not in BIDDABLE_TYPES:
                raise ValidationError("Only auction listings have an end time")
            if listing.status not in (ListingStatus.active, ListingStatus.scheduled):
                raise ConflictError(f"Listing is {listing.status.value}; its end time can no longer change")
            previous = listing.end_time
            listing.end_time = new_end_time
            emit_event(
                db,
                EventType.auction_end_overridden,
                actor_id=actor_id,
                listing_id=listing_id,
                payload={
                    "previous_end_time": previous.isoformat() if previous else None,
                    "end_time": new_end_time.isoformat(),
                },
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    logger.info("End time of listing %s overridden to %s by %s", listing_id, new_end_time, actor_id)
    return listing


def _claimable(now: datetime, stale_before: datetime) -> ColumnElement[bool]:
    return and_(
        Listing.listing_type.in_(BIDDABLE_TYPES),
        or_(
            and_(Listing.status == ListingStatus.active, Listing.end_time <= now),
            and_(Listing.status == ListingStatus.processing, Listing.claimed_at <= stale_before),
        ),
    )


async def process_ended_auctions(
    db: AsyncSession,
    dispatcher: NotificationDispatcher,
    now: Optional[datetime] = None,
) -> SweepReport:
    """Close every auction whose end time has passed.

    Each listing is claimed, resolved and committed on its own, so one
    failure never blocks the rest of the sweep. Running the sweep twice,
    or in two workers at once, closes each listing exactly once.
    """
    now = now or utcnow()
    stale_before = now - timedelta(seconds=get_settings().sweep_claim_ttl_seconds)
    stmt = select(Listing.id).where(_claimable(now, stale_before)).order_by(Listing.end_time)
    listing_ids = list((await db.execute(stmt)).scalars().all())
    await db.commit()

    report = SweepReport()
    for listing_id in listing_ids:
        item, notifications = await _close_listing(db, listing_id, now, stale_before)
        report.items.append(item)
        if item.outcome in ("sold", "unsold"):
            report.processed += 1
        await dispatch_notifications(dispatcher, notifications)
    logger.info("Auction sweep closed %d of %d candidate listings", report.processed, len(listing_ids))
    return report


async def _close_listing(
    db: AsyncSession, listing_id: str, now: datetime, stale_before: datetime
) -> Tuple[SweepItem, List[OutboundNotification]]:
    async with get_lock_registry().hold(listing_key(listing_id)):
        try:
            claim = await db.execute(
                update(Listing)
                .where(Listing.id == listing_id, _claimable(now, stale_before))
                .values(status=ListingStatus.processing, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except Exception as exc:
            await db.rollback()
            logger.exception("Could not claim listing %s", listing_id)
            return SweepItem(id=listing_id, outcome="error", reason=str(exc)), []
        if claim.rowcount != 1:
            return SweepItem(id=listing_id, outcome="skipped", reason="claimed by another worker"), []

        try:
            return await _resolve_claimed(db, listing_id, now)
        except Exception as exc:
            await db.rollback()
            logger.exception("Closing listing %s failed; releasing claim", listing_id)
            await _release_claim(db, listing_id)
            return SweepItem(id=listing_id, outcome="error", reason=str(exc)), []


async def _release_claim(db: AsyncSession, listing_id: str) -> None:
    try:
        await db.execute(
            update(Listing)
            .where(Listing.id == listing_id, Listing.status == ListingStatus.processing)
            .values(status=ListingStatus.active, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("Could not release claim on listing %s; it will be reclaimed after the TTL", listing_id)


async def _resolve_claimed(
    db: AsyncSession, listing_id: str, now: datetime
) -> Tuple[SweepItem, List[OutboundNotification]]:
    listing = await lock_listing(db, listing_id)
    if listing.status is not ListingStatus.processing:
        await db.rollback()
        return SweepItem(id=listing_id, outcome="skipped", reason=f"listing is {listing.status.value}"), []

    winner = await get_active_bid(db, listing_id)
    reserve = listing.reserve_price
    title = listing.title
    listing.claimed_at = None
    listing.ended_at = now

    if winner is not None and (reserve is None or winner.amount >= reserve):
        listing.status = ListingStatus.sold
        async with get_lock_registry().hold(invoice_key(listing_id, listing.seller_id)):
            invoice, created = await issue_invoice(
                db,
                listing_id,
                listing.seller_id,
                winner.bidder_id,
                winner.amount,
                SaleSource.auction,
                now=now,
            )
            emit_event(
                db,
                EventType.auction_sold,
                actor_id=None,
                listing_id=listing_id,
                invoice_id=invoice.id,
                payload={"winner_id": winner.bidder_id, "sale_amount": str(winner.amount)},
            )
            await db.commit()
        logger.info("Listing %s sold to %s for %s", listing_id, winner.bidder_id, winner.amount)
        item = SweepItem(
            id=listing_id,
            outcome="sold",
            invoice_id=invoice.id,
            winner_id=winner.bidder_id,
            sale_amount=winner.amount,
        )
        return item, invoice_notifications(invoice, title) if created else []

    listing.status = ListingStatus.unsold
    reason = "reserve not met" if winner is not None else "no bids"
    bidders: List[str] = []
    if winner is not None:
        for bid in await load_ledger(db, listing_id):
            if bid.status is not BidStatus.retracted and bid.bidder_id not in bidders:
                bidders.append(bid.bidder_id)
    emit_event(
        db,
        EventType.auction_unsold,
        actor_id=None,
        listing_id=listing_id,
        payload={"reason": reason, "high_bid": str(winner.amount) if winner else None},
    )
    await db.commit()
    logger.info("Listing %s closed unsold (%s)", listing_id, reason)

    if winner is not None:
        seller_body = (
            f'"{title}" ended with a high bid of {format_money(winner.amount)}, '
            f"which did not meet your reserve of {format_money(reserve)}."
        )
    else:
        seller_body = f'"{title}" ended without any bids.'
    notifications = [
        OutboundNotification(
            user_id=listing.seller_id,
            type=NotificationType.auction_ended,
            title="Your auction has ended",
            body=seller_body,
            listing_id=listing_id,
        )
    ]
    notifications.extend(
        OutboundNotification(
            user_id=bidder_id,
            type=NotificationType.auction_ended,
            title="Auction ended - reserve not met",
            body=f'The auction for "{title}" ended without meeting the reserve price.',
            listing_id=listing_id,
        )
        for bidder_id in bidders
    )
    return SweepItem(id=listing_id, outcome="unsold", reason=reason), notifications


async def activate_scheduled_listings(db: AsyncSession, now: Optional[datetime] = None) -> SweepReport:
    """Open every scheduled listing whose start time has arrived."""
    now = now or utcnow()
    stmt = select(Listing.id).where(
        Listing.status == ListingStatus.scheduled,
        Listing.start_time.is_not(None),
        Listing.start_time <= now,
    )
    report = SweepReport()
    try:
        for listing_id in list((await db.execute(stmt)).scalars().all()):
            result = await db.execute(
                update(Listing)
                .where(Listing.id == listing_id, Listing.status == ListingStatus.scheduled)
                .values(status=ListingStatus.active, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                continue
            emit_event(db, EventType.listing_activated, listing_id=listing_id)
            report.items.append(SweepItem(id=listing_id, outcome="activated"))
            report.processed += 1
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    if report.processed:
        logger.info("Activated %d scheduled listings", report.processed)
    return report
