"""
Listing lookups shared by the bid ledger, the auction clock and offers.
"""
from __future__ import annotations

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFoundError
from ..models import Bid, BidStatus, Listing


async def get_listing(db: AsyncSession, listing_id: str) -> Listing:
    listing = await db.get(Listing, listing_id)
    if listing is None:
        raise NotFoundError(f"Listing {listing_id} not found")
    return listing


async def lock_listing(db: AsyncSession, listing_id: str) -> Listing:
    """Load a listing for mutation, row-locked where the backend supports it.

    Always re-reads the row so that state loaded in an earlier transaction
    of the same session never leaks into a decision.
    """
    stmt = (
        select(Listing)
        .where(Listing.id == listing_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    listing = (await db.execute(stmt)).scalar_one_or_none()
    if listing is None:
        raise NotFoundError(f"Listing {listing_id} not found")
    return listing


async def load_ledger(db: AsyncSession, listing_id: str) -> List[Bid]:
    """Return every bid on a listing in placement order."""
    stmt = (
        select(Bid)
        .where(Bid.listing_id == listing_id)
        .order_by(Bid.sequence)
        .execution_options(populate_existing=True)
    )
    return list((await db.execute(stmt)).scalars().all())


async def get_active_bid(db: AsyncSession, listing_id: str) -> Optional[Bid]:
    stmt = (
        select(Bid)
        .where(Bid.listing_id == listing_id, Bid.status == BidStatus.active)
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()
