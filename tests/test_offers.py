"""
Tests for the offer negotiation state machine.
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from bidbook.core.config import get_settings
from bidbook.core.errors import ConflictError, PermissionDeniedError, ValidationError
from bidbook.core.models import Invoice, Listing, ListingStatus, ListingType, Offer, OfferStatus
from bidbook.core.services.notifications import NotificationType
from bidbook.core.services.offers import (
    accept_offer,
    counter_offer,
    create_offer,
    expire_offers,
    get_offer_chain,
    reject_offer,
    withdraw_offer,
)

from conftest import T0


@pytest.fixture()
async def offer_listing(make_listing):  # type: ignore[no-untyped-def]
    return await make_listing(
        listing_type=ListingType.fixed_price,
        starting_price=Decimal("1000.00"),
        end_time=None,
        accept_offers=True,
    )


async def _status(db, offer_id):  # type: ignore[no-untyped-def]
    offer = await db.get(Offer, offer_id, populate_existing=True)
    return offer.status


@pytest.mark.asyncio
async def test_counter_then_accept_settles(db, dispatcher, offer_listing) -> None:
    opened = await create_offer(db, dispatcher, offer_listing.id, "alice", Decimal("700"), message="Cash today", now=T0)
    assert opened.offer.status is OfferStatus.pending
    assert opened.offer.root_offer_id == opened.offer.id
    assert opened.offer.expires_at == T0 + timedelta(hours=48)
    assert [n.user_id for n in dispatcher.of_type(NotificationType.new_offer)] == ["seller-1"]

    countered = await counter_offer(
        db, dispatcher, opened.offer.id, "seller-1", Decimal("850"), now=T0 + timedelta(hours=1)
    )
    counter = countered.counter_offer
    assert countered.offer.status is OfferStatus.countered
    assert counter.status is OfferStatus.pending
    assert counter.counter_count == 1
    assert counter.parent_offer_id == opened.offer.id
    assert counter.root_offer_id == opened.offer.id
    assert counter.expires_at == T0 + timedelta(hours=49)
    assert [n.user_id for n in dispatcher.of_type(NotificationType.offer_countered)] == ["alice"]

    accepted = await accept_offer(db, dispatcher, counter.id, "alice", now=T0 + timedelta(hours=2))

    assert accepted.offer.status is OfferStatus.accepted
    invoice = await db.get(Invoice, accepted.invoice_id)
    assert invoice.sale_amount == Decimal("850.00")
    assert invoice.buyer_id == "alice"
    assert invoice.offer_id == counter.id
    listing = await db.get(Listing, offer_listing.id, populate_existing=True)
    assert listing.status is ListingStatus.sold
    chain = await get_offer_chain(db, counter.id)
    assert [(o.counter_count, o.status) for o in chain] == [(0, OfferStatus.countered), (1, OfferStatus.accepted)]
    assert sorted(n.user_id for n in dispatcher.of_type(NotificationType.offer_accepted)) == ["alice", "seller-1"]


@pytest.mark.asyncio
async def test_chain_keeps_a_single_pending_node(db, dispatcher, offer_listing) -> None:
    opened = await create_offer(db, dispatcher, offer_listing.id, "alice", Decimal("700"), now=T0)
    first = await counter_offer(db, dispatcher, opened.offer.id, "seller-1", Decimal("900"), now=T0)
    second = await counter_offer(db, dispatcher, first.counter_offer.id, "alice", Decimal("800"), now=T0)

    pending = await db.scalar(
        select(func.count())
        .select_from(Offer)
        .where(Offer.root_offer_id == opened.offer.id, Offer.status == OfferStatus.pending)
    )
    assert pending == 1
    assert second.counter_offer.counter_count == 2
    with pytest.raises(ConflictError):
        await counter_offer(db, dispatcher, first.counter_offer.id, "alice", Decimal("750"), now=T0)


@pytest.mark.asyncio
async def test_only_the_right_party_may_act(db, dispatcher, offer_listing) -> None:
    opened = await create_offer(db, dispatcher, offer_listing.id, "alice", Decimal("700"), now=T0)
    offer_id = opened.offer.id

    with pytest.raises(PermissionDeniedError):
        await accept_offer(db, dispatcher, offer_id, "alice", now=T0)
    with pytest.raises(PermissionDeniedError):
        await accept_offer(db, dispatcher, offer_id, "mallory", now=T0)
    with pytest.raises(PermissionDeniedError):
        await withdraw_offer(db, dispatcher, offer_id, "seller-1", now=T0)

    countered = await counter_offer(db, dispatcher, offer_id, "seller-1", Decimal("900"), now=T0)
    counter_id = countered.counter_offer.id
    with pytest.raises(PermissionDeniedError):
        await reject_offer(db, dispatcher, counter_id, "seller-1", now=T0)

    rejected = await reject_offer(db, dispatcher, counter_id, "alice", now=T0)
    assert rejected.offer.status is OfferStatus.rejected
    assert [n.user_id for n in dispatcher.of_type(NotificationType.offer_declined)] == ["seller-1"]
    with pytest.raises(ConflictError):
        await reject_offer(db, dispatcher, counter_id, "alice", now=T0)


@pytest.mark.asyncio
async def test_withdraw_by_author(db, dispatcher, offer_listing) -> None:
    opened = await create_offer(db, dispatcher, offer_listing.id, "alice", Decimal("700"), now=T0)

    withdrawn = await withdraw_offer(db, dispatcher, opened.offer.id, "alice", now=T0)

    assert withdrawn.offer.status is OfferStatus.withdrawn
    assert [n.user_id for n in dispatcher.of_type(NotificationType.offer_withdrawn)] == ["seller-1"]


@pytest.mark.asyncio
async def test_only_the_buyer_withdraws_a_seller_counter(db, dispatcher, offer_listing) -> None:
    opened = await create_offer(db, dispatcher, offer_listing.id, "alice", Decimal("700"), now=T0)
    countered = await counter_offer(db, dispatcher, opened.offer.id, "seller-1", Decimal("900"), now=T0)
    counter_id = countered.counter_offer.id

    with pytest.raises(PermissionDeniedError):
        await withdraw_offer(db, dispatcher, counter_id, "seller-1", now=T0)
    assert await _status(db, counter_id) is OfferStatus.pending

    withdrawn = await withdraw_offer(db, dispatcher, counter_id, "alice", now=T0)

    assert withdrawn.offer.status is OfferStatus.withdrawn
    assert [n.user_id for n in dispatcher.of_type(NotificationType.offer_withdrawn)] == ["seller-1"]


@pytest.mark.asyncio
async def test_counter_validation(db, dispatcher, offer_listing, monkeypatch: pytest.MonkeyPatch) -> None:
    opened = await create_offer(db, dispatcher, offer_listing.id, "alice", Decimal("700"), now=T0)
    with pytest.raises(ValidationError):
        await counter_offer(db, dispatcher, opened.offer.id, "seller-1", Decimal("700"), now=T0)
    with pytest.raises(ValidationError):
        await counter_offer(db, dispatcher, opened.offer.id, "seller-1", Decimal("0"), now=T0)
    assert await _status(db, opened.offer.id) is OfferStatus.pending

    monkeypatch.setenv("BIDBOOK_MAX_COUNTER_OFFERS", "1")
    get_settings.cache_clear()
    first = await counter_offer(db, dispatcher, opened.offer.id, "seller-1", Decimal("900"), now=T0)
    with pytest.raises(ValidationError):
        await counter_offer(db, dispatcher, first.counter_offer.id, "alice", Decimal("800"), now=T0)


@pytest.mark.asyncio
async def test_create_offer_rules(db, dispatcher, make_listing, offer_listing) -> None:
    with pytest.raises(ValidationError):
        await create_offer(db, dispatcher, offer_listing.id, "seller-1", Decimal("700"), now=T0)
    with pytest.raises(ValidationError):
        await create_offer(db, dispatcher, offer_listing.id, "alice", Decimal("-5"), now=T0)

    closed = await make_listing(accept_offers=False)
    with pytest.raises(ValidationError):
        await create_offer(db, dispatcher, closed.id, "alice", Decimal("700"), now=T0)

    sold = await make_listing(accept_offers=True, status=ListingStatus.sold)
    with pytest.raises(ConflictError):
        await create_offer(db, dispatcher, sold.id, "alice", Decimal("700"), now=T0)

    await create_offer(db, dispatcher, offer_listing.id, "alice", Decimal("700"), now=T0)
    with pytest.raises(ConflictError):
        await create_offer(db, dispatcher, offer_listing.id, "alice", Decimal("720"), now=T0)


@pytest.mark.asyncio
async def test_per_buyer_offer_cap(db, dispatcher, offer_listing) -> None:
    for amount in ("600", "650", "700"):
        opened = await create_offer(db, dispatcher, offer_listing.id, "alice", Decimal(amount), now=T0)
        await withdraw_offer(db, dispatcher, opened.offer.id, "alice", now=T0)

    with pytest.raises(ValidationError, match="at most 3"):
        await create_offer(db, dispatcher, offer_listing.id, "alice", Decimal("750"), now=T0)


@pytest.mark.asyncio
async def test_expiry_sweep_then_action_conflicts(db, dispatcher, offer_listing) -> None:
    opened = await create_offer(db, dispatcher, offer_listing.id, "alice", Decimal("700"), now=T0)
    dispatcher.sent.clear()

    early = await expire_offers(db, dispatcher, now=T0 + timedelta(hours=47))
    assert early.processed == 0

    report = await expire_offers(db, dispatcher, now=T0 + timedelta(hours=49))
    assert report.processed == 1
    assert sorted(n.user_id for n in dispatcher.of_type(NotificationType.offer_expired)) == ["alice", "seller-1"]
    assert await _status(db, opened.offer.id) is OfferStatus.expired

    with pytest.raises(ConflictError):
        await accept_offer(db, dispatcher, opened.offer.id, "seller-1", now=T0 + timedelta(hours=50))
    with pytest.raises(ConflictError):
        await counter_offer(db, dispatcher, opened.offer.id, "seller-1", Decimal("900"), now=T0 + timedelta(hours=50))
    with pytest.raises(ConflictError):
        await withdraw_offer(db, dispatcher, opened.offer.id, "alice", now=T0 + timedelta(hours=50))
    assert await _status(db, opened.offer.id) is OfferStatus.expired


@pytest.mark.asyncio
async def test_expired_offer_cannot_be_accepted_before_sweep(db, dispatcher, offer_listing) -> None:
    opened = await create_offer(db, dispatcher, offer_listing.id, "alice", Decimal("700"), now=T0)

    with pytest.raises(ConflictError, match="expired"):
        await accept_offer(db, dispatcher, opened.offer.id, "seller-1", now=T0 + timedelta(hours=49))

    assert await _status(db, opened.offer.id) is OfferStatus.expired
    assert await db.scalar(select(func.count()).select_from(Invoice)) == 0


@pytest.mark.asyncio
async def test_accepting_rejects_other_pending_offers(db, dispatcher, offer_listing) -> None:
    alice = await create_offer(db, dispatcher, offer_listing.id, "alice", Decimal("700"), now=T0)
    bob = await create_offer(db, dispatcher, offer_listing.id, "bob", Decimal("750"), now=T0)
    dispatcher.sent.clear()

    await accept_offer(db, dispatcher, bob.offer.id, "seller-1", now=T0)

    assert await _status(db, alice.offer.id) is OfferStatus.rejected
    assert [n.user_id for n in dispatcher.of_type(NotificationType.offer_declined)] == ["alice"]
    with pytest.raises(ConflictError):
        await accept_offer(db, dispatcher, alice.offer.id, "seller-1", now=T0)


@pytest.mark.asyncio
async def test_auto_accept_and_auto_decline_thresholds(db, dispatcher, make_listing) -> None:
    listing = await make_listing(
        listing_type=ListingType.fixed_price,
        starting_price=Decimal("1000.00"),
        end_time=None,
        accept_offers=True,
        auto_accept_price=Decimal("900.00"),
        auto_decline_price=Decimal("500.00"),
    )

    with pytest.raises(ValidationError):
        await create_offer(db, dispatcher, listing.id, "alice", Decimal("450"), now=T0)

    result = await create_offer(db, dispatcher, listing.id, "bob", Decimal("950"), now=T0)

    assert result.offer.status is OfferStatus.accepted
    assert result.invoice_id is not None
    refreshed = await db.get(Listing, listing.id, populate_existing=True)
    assert refreshed.status is ListingStatus.sold
    assert dispatcher.of_type(NotificationType.new_offer) == []
