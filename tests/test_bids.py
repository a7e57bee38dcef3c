"""
Tests for the bid ledger and proxy resolver.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from bidbook.core.errors import ConflictError, NotFoundError, ValidationError
from bidbook.core.models import Bid, BidStatus, Event, EventType, Listing, ListingType
from bidbook.core.services.bids import bid_increment, list_bids, min_next_bid, place_bid
from bidbook.core.services.notifications import NotificationType

from conftest import T0


async def _active_bids(db, listing_id):  # type: ignore[no-untyped-def]
    stmt = select(Bid).where(Bid.listing_id == listing_id, Bid.status == BidStatus.active)
    return list((await db.execute(stmt.execution_options(populate_existing=True))).scalars().all())


@pytest.mark.parametrize(
    "price, increment",
    [
        ("0.50", "1"),
        ("249.99", "1"),
        ("250", "10"),
        ("999.99", "10"),
        ("1000", "50"),
        ("9999", "50"),
        ("10000", "100"),
        ("250000", "100"),
    ],
)
def test_bid_increment_table(price: str, increment: str) -> None:
    assert bid_increment(Decimal(price)) == Decimal(increment)


def test_min_next_bid() -> None:
    assert min_next_bid(Decimal("560")) == Decimal("570")


@pytest.mark.asyncio
async def test_first_bid_must_clear_starting_price_by_increment(db, dispatcher, make_listing) -> None:
    listing = await make_listing()
    with pytest.raises(ValidationError, match="Minimum bid is \\$101.00"):
        await place_bid(db, dispatcher, listing.id, "alice", Decimal("100"), now=T0)

    result = await place_bid(db, dispatcher, listing.id, "alice", Decimal("101"), now=T0)
    assert result.current_price == Decimal("101")
    assert result.winning_bidder_id == "alice"
    assert not result.outbid


@pytest.mark.asyncio
async def test_rejects_invalid_bids(db, dispatcher, make_listing) -> None:
    listing = await make_listing()
    with pytest.raises(ValidationError):
        await place_bid(db, dispatcher, listing.id, "seller-1", Decimal("150"), now=T0)
    with pytest.raises(ValidationError):
        await place_bid(db, dispatcher, listing.id, "alice", Decimal("0"), now=T0)
    with pytest.raises(ValidationError):
        await place_bid(db, dispatcher, listing.id, "alice", Decimal("150"), max_bid=Decimal("120"), now=T0)
    with pytest.raises(NotFoundError):
        await place_bid(db, dispatcher, "missing", "alice", Decimal("150"), now=T0)

    fixed = await make_listing(listing_type=ListingType.fixed_price, end_time=None)
    with pytest.raises(ValidationError):
        await place_bid(db, dispatcher, fixed.id, "alice", Decimal("150"), now=T0)


@pytest.mark.asyncio
async def test_bid_after_end_time_is_a_conflict(db, dispatcher, make_listing) -> None:
    listing = await make_listing(end_time=T0 - timedelta(seconds=1))
    with pytest.raises(ConflictError):
        await place_bid(db, dispatcher, listing.id, "alice", Decimal("150"), now=T0)


@pytest.mark.asyncio
async def test_manual_bid_against_standing_proxy(db, dispatcher, make_listing) -> None:
    listing = await make_listing()
    await place_bid(db, dispatcher, listing.id, "alice", Decimal("110"), max_bid=Decimal("600"), now=T0)

    result = await place_bid(db, dispatcher, listing.id, "bob", Decimal("550"), now=T0 + timedelta(minutes=1))

    assert result.current_price == Decimal("560")
    assert result.winning_bidder_id == "alice"
    assert result.outbid
    ledger = await list_bids(db, listing.id)
    assert [(b.bidder_id, b.amount, b.status, b.is_auto) for b in ledger] == [
        ("alice", Decimal("110"), BidStatus.outbid, False),
        ("bob", Decimal("550"), BidStatus.outbid, False),
        ("alice", Decimal("560"), BidStatus.active, True),
    ]
    outbid = dispatcher.of_type(NotificationType.outbid)
    assert [n.user_id for n in outbid] == ["bob"]
    assert [n.user_id for n in dispatcher.of_type(NotificationType.new_bid)] == ["seller-1", "seller-1"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "amount, max_bid",
    [
        ("200", "500"),
        ("499", "500"),
        ("500", "500"),
        ("500", None),
    ],
)
async def test_equal_ceilings_favour_the_earlier_proxy(db, dispatcher, make_listing, amount, max_bid) -> None:
    listing = await make_listing()
    await place_bid(db, dispatcher, listing.id, "alice", Decimal("150"), max_bid=Decimal("500"), now=T0)

    result = await place_bid(
        db,
        dispatcher,
        listing.id,
        "bob",
        Decimal(amount),
        max_bid=Decimal(max_bid) if max_bid else None,
        now=T0 + timedelta(minutes=1),
    )

    assert result.winning_bidder_id == "alice"
    assert result.current_price == Decimal("500")
    assert result.outbid
    active = await _active_bids(db, listing.id)
    assert len(active) == 1
    assert active[0].bidder_id == "alice"
    assert active[0].amount == Decimal("500")
    assert [n.user_id for n in dispatcher.of_type(NotificationType.outbid)] == ["bob"]


@pytest.mark.asyncio
async def test_tie_winner_raising_ceiling_keeps_price(db, dispatcher, make_listing) -> None:
    listing = await make_listing()
    await place_bid(db, dispatcher, listing.id, "alice", Decimal("150"), max_bid=Decimal("500"), now=T0)
    await place_bid(db, dispatcher, listing.id, "bob", Decimal("500"), max_bid=Decimal("500"), now=T0)

    result = await place_bid(db, dispatcher, listing.id, "alice", Decimal("510"), max_bid=Decimal("800"), now=T0)

    assert result.ceiling_raised
    assert result.winning_bidder_id == "alice"
    assert result.current_price == Decimal("500")


@pytest.mark.asyncio
async def test_stronger_proxy_takes_lead_one_increment_over_leader(db, dispatcher, make_listing) -> None:
    listing = await make_listing()
    await place_bid(db, dispatcher, listing.id, "alice", Decimal("120"), max_bid=Decimal("300"), now=T0)

    result = await place_bid(
        db, dispatcher, listing.id, "bob", Decimal("130"), max_bid=Decimal("1000"), now=T0 + timedelta(minutes=1)
    )

    assert result.winning_bidder_id == "bob"
    assert result.current_price == Decimal("310")
    assert not result.outbid
    assert [n.user_id for n in dispatcher.of_type(NotificationType.outbid)] == ["alice"]


@pytest.mark.asyncio
async def test_price_never_decreases_and_matches_single_active_bid(db, dispatcher, make_listing) -> None:
    listing = await make_listing()
    bidders = [
        ("alice", "110", "400"),
        ("bob", "150", None),
        ("carol", "200", "450"),
        ("bob", "460", None),
        ("dave", "480", "900"),
    ]
    last_price = Decimal("0")
    for minute, (bidder, amount, ceiling) in enumerate(bidders):
        try:
            result = await place_bid(
                db,
                dispatcher,
                listing.id,
                bidder,
                Decimal(amount),
                max_bid=Decimal(ceiling) if ceiling else None,
                now=T0 + timedelta(minutes=minute),
            )
        except ValidationError:
            continue
        assert result.current_price >= last_price
        last_price = result.current_price
        active = await _active_bids(db, listing.id)
        assert len(active) == 1
        refreshed = await db.get(Listing, listing.id, populate_existing=True)
        assert refreshed.current_price == active[0].amount

    assert last_price == Decimal("480")
    assert result.winning_bidder_id == "dave"


@pytest.mark.asyncio
async def test_leader_raises_own_ceiling_without_new_entry(db, dispatcher, make_listing) -> None:
    listing = await make_listing()
    await place_bid(db, dispatcher, listing.id, "alice", Decimal("120"), max_bid=Decimal("300"), now=T0)

    result = await place_bid(
        db, dispatcher, listing.id, "alice", Decimal("130"), max_bid=Decimal("400"), now=T0 + timedelta(minutes=1)
    )

    assert result.ceiling_raised
    assert result.bid_id is None
    assert result.current_price == Decimal("120")
    ledger = await list_bids(db, listing.id)
    assert len(ledger) == 1
    assert ledger[0].max_bid == Decimal("400")

    with pytest.raises(ValidationError):
        await place_bid(db, dispatcher, listing.id, "alice", Decimal("130"), max_bid=Decimal("350"), now=T0)


@pytest.mark.asyncio
async def test_proxy_meets_reserve_when_ceiling_allows(db, dispatcher, make_listing) -> None:
    listing = await make_listing(reserve_price=Decimal("300"))

    result = await place_bid(db, dispatcher, listing.id, "alice", Decimal("120"), max_bid=Decimal("500"), now=T0)

    assert result.current_price == Decimal("300")
    assert result.reserve_met
    notices = dispatcher.of_type(NotificationType.reserve_met)
    assert [n.user_id for n in notices] == ["seller-1"]
    assert dispatcher.of_type(NotificationType.outbid) == []


@pytest.mark.asyncio
async def test_soft_close_extends_only_inside_window(db, dispatcher, make_listing) -> None:
    closing = await make_listing(end_time=T0 + timedelta(seconds=30))
    result = await place_bid(db, dispatcher, closing.id, "alice", Decimal("150"), now=T0)
    assert result.auction_extended
    assert result.end_time == T0 + timedelta(minutes=2)
    refreshed = await db.get(Listing, closing.id, populate_existing=True)
    assert refreshed.original_end_time == T0 + timedelta(seconds=30)

    relaxed = await make_listing(end_time=T0 + timedelta(minutes=10))
    result = await place_bid(db, dispatcher, relaxed.id, "alice", Decimal("150"), now=T0)
    assert not result.auction_extended
    assert result.end_time == T0 + timedelta(minutes=10)


@pytest.mark.asyncio
async def test_bid_events_are_recorded(db, dispatcher, make_listing) -> None:
    listing = await make_listing()
    await place_bid(db, dispatcher, listing.id, "alice", Decimal("110"), max_bid=Decimal("600"), now=T0)
    await place_bid(db, dispatcher, listing.id, "bob", Decimal("550"), now=T0)

    stmt = select(Event.event_type, func.count()).where(Event.listing_id == listing.id).group_by(Event.event_type)
    counts = dict((await db.execute(stmt)).all())
    assert counts[EventType.bid_placed] == 2
    assert counts[EventType.proxy_bid_placed] == 1


@pytest.mark.asyncio
async def test_concurrent_bids_leave_one_consistent_leader(session_factory, dispatcher, make_listing) -> None:
    listing = await make_listing()

    async def bid(bidder: str, amount: str):  # type: ignore[no-untyped-def]
        async with session_factory() as session:
            try:
                return await place_bid(session, dispatcher, listing.id, bidder, Decimal(amount), now=T0)
            except ValidationError:
                return None

    await asyncio.gather(*(bid(f"bidder-{i}", str(110 + i * 5)) for i in range(8)))

    async with session_factory() as session:
        active = await _active_bids(session, listing.id)
        refreshed = await session.get(Listing, listing.id)
        sequences = (await session.execute(select(Bid.sequence).where(Bid.listing_id == listing.id))).scalars().all()
    assert len(active) == 1
    assert refreshed.current_price == active[0].amount
    assert sorted(sequences) == list(range(1, len(sequences) + 1))
