"""
Sweep API router.

Entry points for the external scheduler. Every route requires
``Authorization: Bearer <cron_secret>``. Each sweep is safe to run
repeatedly and concurrently.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends

from ..dependencies import DatabaseSession, Dispatcher, require_cron_secret
from ...core.schemas import SweepReport
from ...core.services import auction_clock
from ...core.services import offers as offers_service


router = APIRouter(prefix="/sweeps", tags=["sweeps"], dependencies=[Depends(require_cron_secret)])


@router.post("/auctions", response_model=SweepReport)
async def close_ended_auctions(db: DatabaseSession, dispatcher: Dispatcher) -> SweepReport:
    """Close auctions whose end time has passed."""
    return await auction_clock.process_ended_auctions(db, dispatcher)


@router.post("/offers", response_model=SweepReport)
async def expire_offers(db: DatabaseSession, dispatcher: Dispatcher) -> SweepReport:
    """Expire pending offers past their deadline."""
    return await offers_service.expire_offers(db, dispatcher)


@router.post("/listings", response_model=SweepReport)
async def activate_listings(db: DatabaseSession) -> SweepReport:
    """Open scheduled listings whose start time has arrived."""
    return await auction_clock.activate_scheduled_listings(db)
