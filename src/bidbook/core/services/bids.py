"""
Bid ledger and proxy resolver.

A listing's bids form an append-only ledger. Exactly one entry is
``active`` once bidding has started, and its amount is the listing's
``current_price``. A bid may carry a hidden ceiling (``max_bid``); the
resolver bids on the holder's behalf up to that ceiling.

Placement and resolution run in one critical section under the listing
lock and commit as one transaction, so nobody ever observes a dominated
bid reported as current. Notifications go out after the commit.

Proxy resolution runs to a fixed point. Each round pits the current
leader against the strongest other bidder whose standing ceiling (the
highest ``max_bid or amount`` across that bidder's live entries) exceeds
the current price:

* a stronger challenger takes the lead at
  ``min(leader_ceiling + increment, challenger_ceiling)``;
* on equal ceilings the earlier-placed proxy holds the lead at exactly
  that ceiling;
* a weaker challenger pushes the leader to
  ``min(challenger_ceiling + increment, leader_ceiling)``.

For a manual bid against a standing proxy this reduces to
``min(incoming_amount + increment, proxy.max_bid)``.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ConflictError, ValidationError
from ..events import emit_event
from ..locks import get_lock_registry, listing_key
from ..models import Bid, BidStatus, EventType, Listing, ListingStatus
from ..schemas import BidPlacementResult
from ..utils.clock import utcnow
from .auction_clock import apply_soft_close
from .commissions import get_platform_settings, to_money
from .listings import get_listing, load_ledger, lock_listing
from .notifications import (
    NotificationDispatcher,
    NotificationType,
    OutboundNotification,
    dispatch_notifications,
    format_money,
)

# (upper bound of current price, increment); the first matching tier wins.
BID_INCREMENTS: Tuple[Tuple[Decimal, Decimal], ...] = (
    (Decimal("250"), Decimal("1")),
    (Decimal("1000"), Decimal("10")),
    (Decimal("10000"), Decimal("50")),
)
TOP_INCREMENT = Decimal("100")

logger = logging.getLogger(__name__)


def bid_increment(price: Decimal) -> Decimal:
    """Return the minimum raise over ``price``."""
    for upper, increment in BID_INCREMENTS:
        if price < upper:
            return increment
    return TOP_INCREMENT


def min_next_bid(price: Decimal) -> Decimal:
    return price + bid_increment(price)


def standing_ceilings(ledger: List[Bid]) -> Dict[str, Tuple[Decimal, int]]:
    """Map each bidder to ``(ceiling, sequence of the entry that set it)``.

    ``ledger`` must be in sequence order; on equal ceilings the earliest
    entry is kept, which is what decides proxy ties.
    """
    ceilings: Dict[str, Tuple[Decimal, int]] = {}
    for bid in ledger:
        if bid.status is BidStatus.retracted:
            continue
        current = ceilings.get(bid.bidder_id)
        if current is None or bid.ceiling > current[0]:
            ceilings[bid.bidder_id] = (bid.ceiling, bid.sequence)
    return ceilings


def _auto_bid(leader: Bid, bidder_id: str, amount: Decimal, ceiling: Decimal, now: datetime, sequence: int) -> Bid:
    leader.status = BidStatus.outbid
    return Bid(
        listing_id=leader.listing_id,
        bidder_id=bidder_id,
        amount=amount,
        max_bid=ceiling,
        is_auto=True,
        status=BidStatus.active,
        sequence=sequence,
        created_at=now,
    )


def resolve_proxies(
    ledger: List[Bid],
    leader: Bid,
    reserve_price: Optional[Decimal],
    now: datetime,
) -> List[Bid]:
    """Run proxy bidding to a fixed point.

    Flips superseded entries to ``outbid`` and returns the synthesized
    auto bids, which are also appended to ``ledger``. The last returned
    bid (or ``leader`` if none) is the active one afterwards.

    A challenger whose ceiling equals both the price and the leader's
    ceiling still takes the lead if it was placed first.

    When a reserve is set and the leader's ceiling reaches it while the
    price is still below, the leader is raised to exactly the reserve.
    """
    synthesized: List[Bid] = []
    while True:
        ceilings = standing_ceilings(ledger)
        leader_ceiling, leader_sequence = ceilings[leader.bidder_id]
        challengers = [
            (bidder_id, ceiling, sequence)
            for bidder_id, (ceiling, sequence) in ceilings.items()
            if bidder_id != leader.bidder_id
            and (ceiling > leader.amount or (ceiling == leader_ceiling and sequence < leader_sequence))
        ]
        if not challengers:
            break
        challenger_id, ceiling, sequence = min(challengers, key=lambda c: (-c[1], c[2]))
        if ceiling > leader_ceiling:
            winner_id, winner_ceiling = challenger_id, ceiling
            price = min(leader_ceiling + bid_increment(leader_ceiling), ceiling)
        elif ceiling == leader_ceiling:
            winner_id = challenger_id if sequence < leader_sequence else leader.bidder_id
            winner_ceiling = price = ceiling
        else:
            winner_id, winner_ceiling = leader.bidder_id, leader_ceiling
            price = min(ceiling + bid_increment(ceiling), leader_ceiling)
        leader = _auto_bid(leader, winner_id, price, winner_ceiling, now, ledger[-1].sequence + 1)
        ledger.append(leader)
        synthesized.append(leader)

    if reserve_price is not None and leader.amount < reserve_price <= leader.ceiling:
        leader = _auto_bid(leader, leader.bidder_id, reserve_price, leader.ceiling, now, ledger[-1].sequence + 1)
        ledger.append(leader)
        synthesized.append(leader)
    return synthesized


def reserve_met(listing: Listing, has_bids: bool) -> bool:
    if not has_bids:
        return False
    return listing.reserve_price is None or listing.current_price >= listing.reserve_price


def _check_biddable(listing: Listing, bidder_id: str, now: datetime) -> None:
    if not listing.takes_bids:
        raise ValidationError("This listing does not accept bids")
    if listing.status is not ListingStatus.active:
        raise ConflictError(f"Listing is {listing.status.value}, not accepting bids")
    if listing.end_time is not None and listing.end_time <= now:
        raise ConflictError("This auction has ended")
    if listing.seller_id == bidder_id:
        raise ValidationError("You cannot bid on your own listing")


async def place_bid(
    db: AsyncSession,
    dispatcher: NotificationDispatcher,
    listing_id: str,
    bidder_id: str,
    amount: Decimal,
    max_bid: Optional[Decimal] = None,
    is_auto: bool = False,
    now: Optional[datetime] = None,
) -> BidPlacementResult:
    """Place a bid and resolve proxy bidding to a fixed point.

    :raises NotFoundError: unknown listing.
    :raises ValidationError: bad amounts, self-bidding, below the minimum.
    :raises ConflictError: listing not active or auction already over.
    """
    amount = to_money(amount)
    ceiling = to_money(max_bid) if max_bid is not None else None
    if amount <= 0:
        raise ValidationError("Bid amount must be positive")
    if ceiling is not None and ceiling < amount:
        raise ValidationError("Maximum bid cannot be lower than the bid amount")
    now = now or utcnow()

    async with get_lock_registry().hold(listing_key(listing_id)):
        try:
            listing = await lock_listing(db, listing_id)
            _check_biddable(listing, bidder_id, now)
            ledger = await load_ledger(db, listing_id)
            previous = next((bid for bid in ledger if bid.status is BidStatus.active), None)
            had_reserve = reserve_met(listing, previous is not None)

            if previous is not None and previous.bidder_id == bidder_id:
                new_ceiling = ceiling if ceiling is not None else amount
                result, notifications = await _raise_ceiling(
                    db, listing, ledger, previous, new_ceiling, had_reserve, now
                )
            else:
                minimum = min_next_bid(listing.current_price)
                if amount < minimum:
                    raise ValidationError(f"Minimum bid is {format_money(minimum)}")
                result, notifications = await _append_and_resolve(
                    db, listing, ledger, previous, bidder_id, amount, ceiling, is_auto, had_reserve, now
                )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    await dispatch_notifications(dispatcher, notifications)
    return result


async def _append_and_resolve(
    db: AsyncSession,
    listing: Listing,
    ledger: List[Bid],
    previous: Optional[Bid],
    bidder_id: str,
    amount: Decimal,
    ceiling: Optional[Decimal],
    is_auto: bool,
    had_reserve: bool,
    now: datetime,
) -> Tuple[BidPlacementResult, List[OutboundNotification]]:
    if previous is not None:
        previous.status = BidStatus.outbid
    incoming = Bid(
        listing_id=listing.id,
        bidder_id=bidder_id,
        amount=amount,
        max_bid=ceiling,
        is_auto=is_auto,
        status=BidStatus.active,
        sequence=ledger[-1].sequence + 1 if ledger else 1,
        created_at=now,
    )
    db.add(incoming)
    ledger.append(incoming)
    synthesized = resolve_proxies(ledger, incoming, listing.reserve_price, now)
    db.add_all(synthesized)
    winner = synthesized[-1] if synthesized else incoming

    listing.current_price = winner.amount
    listing.bid_count = (listing.bid_count or 0) + 1 + len(synthesized)
    platform = await get_platform_settings(db)
    extended = apply_soft_close(listing, platform, now)
    await db.flush()

    emit_event(
        db,
        EventType.bid_placed,
        actor_id=bidder_id,
        listing_id=listing.id,
        payload={"bid_id": incoming.id, "amount": str(amount), "is_auto": is_auto},
    )
    for bid in synthesized:
        emit_event(
            db,
            EventType.proxy_bid_placed,
            actor_id=bid.bidder_id,
            listing_id=listing.id,
            payload={"bid_id": bid.id, "amount": str(bid.amount)},
        )
    if extended:
        emit_event(
            db,
            EventType.auction_extended,
            actor_id=bidder_id,
            listing_id=listing.id,
            payload={"end_time": listing.end_time.isoformat()},
        )

    now_reserve = reserve_met(listing, True)
    logger.info(
        "Bid %s on listing %s by %s: price %s, leader %s (%d proxy bids)",
        incoming.id,
        listing.id,
        bidder_id,
        listing.current_price,
        winner.bidder_id,
        len(synthesized),
    )

    lost_lead: List[str] = []
    for holder in [previous.bidder_id if previous else None, incoming.bidder_id] + [b.bidder_id for b in synthesized]:
        if holder and holder != winner.bidder_id and holder not in lost_lead:
            lost_lead.append(holder)
    notifications = [
        OutboundNotification(
            user_id=user_id,
            type=NotificationType.outbid,
            title="You have been outbid",
            body=f'You were outbid on "{listing.title}". Current high bid: {format_money(listing.current_price)}',
            listing_id=listing.id,
            bid_id=winner.id,
        )
        for user_id in lost_lead
    ]
    notifications.append(
        OutboundNotification(
            user_id=listing.seller_id,
            type=NotificationType.new_bid,
            title="New bid on your listing",
            body=f'Someone bid {format_money(listing.current_price)} on "{listing.title}"',
            listing_id=listing.id,
            bid_id=winner.id,
        )
    )
    if listing.reserve_price is not None and now_reserve and not had_reserve:
        notifications.append(_reserve_met_notification(listing))

    result = BidPlacementResult(
        bid_id=incoming.id,
        current_price=listing.current_price,
        winning_bid_id=winner.id,
        winning_bidder_id=winner.bidder_id,
        outbid=winner.bidder_id != bidder_id,
        auction_extended=extended,
        end_time=listing.end_time,
        reserve_met=now_reserve,
    )
    return result, notifications


async def _raise_ceiling(
    db: AsyncSession,
    listing: Listing,
    ledger: List[Bid],
    active: Bid,
    new_ceiling: Decimal,
    had_reserve: bool,
    now: datetime,
) -> Tuple[BidPlacementResult, List[OutboundNotification]]:
    """Raise the leader's hidden ceiling instead of bidding against themselves."""
    if new_ceiling <= active.ceiling:
        raise ValidationError("You're already the high bidder and your maximum bid is higher or equal")
    active.max_bid = new_ceiling
    emit_event(
        db,
        EventType.bid_ceiling_raised,
        actor_id=active.bidder_id,
        listing_id=listing.id,
        payload={"bid_id": active.id},
    )
    notifications: List[OutboundNotification] = []
    extended = False
    winner = active
    synthesized = resolve_proxies(ledger, active, listing.reserve_price, now)
    if synthesized:
        db.add_all(synthesized)
        winner = synthesized[-1]
        listing.current_price = winner.amount
        listing.bid_count = (listing.bid_count or 0) + len(synthesized)
        platform = await get_platform_settings(db)
        extended = apply_soft_close(listing, platform, now)
    await db.flush()
    now_reserve = reserve_met(listing, True)
    if listing.reserve_price is not None and now_reserve and not had_reserve:
        notifications.append(_reserve_met_notification(listing))
    result = BidPlacementResult(
        bid_id=None,
        current_price=listing.current_price,
        winning_bid_id=winner.id,
        winning_bidder_id=winner.bidder_id,
        ceiling_raised=True,
        auction_extended=extended,
        end_time=listing.end_time,
        reserve_met=now_reserve,
    )
    return result, notifications


def _reserve_met_notification(listing: Listing) -> OutboundNotification:
    return OutboundNotification(
        user_id=listing.seller_id,
        type=NotificationType.reserve_met,
        title="Reserve price met!",
        body=f'The reserve price of {format_money(listing.reserve_price)} has been met on "{listing.title}". '
        "Your item will sell when the auction ends.",
        listing_id=listing.id,
    )


async def list_bids(db: AsyncSession, listing_id: str) -> List[Bid]:
    """Return the ledger of a listing in placement order."""
    await get_listing(db, listing_id)
    return await load_ledger(db, listing_id)
