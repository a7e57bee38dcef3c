"""
Listing API router.

Read access to a listing's public state and its bid ledger, bid
placement, and opening offers on a listing.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Path

from ..dependencies import CurrentActor, DatabaseSession, Dispatcher
from ...core.models import OfferStatus
from ...core.schemas import (
    BidOut,
    BidPlacementResult,
    CreateOfferRequest,
    ListingOut,
    OfferActionResult,
    OfferOut,
    PlaceBidRequest,
)
from ...core.services import bids as bids_service
from ...core.services import listings as listings_service
from ...core.services import offers as offers_service


router = APIRouter(prefix="/listings", tags=["listings"])


@router.get("/{listing_id}", response_model=ListingOut)
async def get_listing(
    db: DatabaseSession,
    listing_id: str = Path(..., description="Identifier of the listing."),
) -> ListingOut:
    listing = await listings_service.get_listing(db, listing_id)
    return ListingOut.model_validate(listing)


@router.get("/{listing_id}/bids", response_model=list[BidOut])
async def list_bids(
    db: DatabaseSession,
    listing_id: str = Path(..., description="Identifier of the listing."),
) -> list[BidOut]:
    """Return the bid ledger in placement order. Proxy ceilings stay hidden."""
    ledger = await bids_service.list_bids(db, listing_id)
    return [BidOut.model_validate(bid) for bid in ledger]


@router.post("/{listing_id}/bids", response_model=BidPlacementResult)
async def place_bid(
    req: PlaceBidRequest,
    db: DatabaseSession,
    actor: CurrentActor,
    dispatcher: Dispatcher,
    listing_id: str = Path(..., description="Identifier of the listing."),
) -> BidPlacementResult:
    """Place a bid, optionally with a hidden maximum for proxy bidding."""
    return await bids_service.place_bid(
        db,
        dispatcher,
        listing_id,
        actor,
        req.amount,
        max_bid=req.max_bid,
        is_auto=req.is_auto,
    )


@router.post("/{listing_id}/offers", response_model=OfferActionResult, status_code=201)
async def create_offer(
    req: CreateOfferRequest,
    db: DatabaseSession,
    actor: CurrentActor,
    dispatcher: Dispatcher,
    listing_id: str = Path(..., description="Identifier of the listing."),
) -> OfferActionResult:
    return await offers_service.create_offer(db, dispatcher, listing_id, actor, req.amount, message=req.message)


@router.get("/{listing_id}/offers", response_model=list[OfferOut])
async def list_offers(
    db: DatabaseSession,
    actor: CurrentActor,
    listing_id: str = Path(..., description="Identifier of the listing."),
    status: Optional[OfferStatus] = None,
) -> list[OfferOut]:
    """List offers on a listing. Sellers see all of them, buyers only their own."""
    listing = await listings_service.get_listing(db, listing_id)
    offers = await offers_service.list_offers(db, listing_id, status=status)
    if actor != listing.seller_id:
        offers = [offer for offer in offers if offer.buyer_id == actor]
    return [OfferOut.model_validate(offer) for offer in offers]
