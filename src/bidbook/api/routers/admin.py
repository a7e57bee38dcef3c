"""
Admin API router.

Fee settings, per-seller commission overrides, auction end-time
overrides and manual settlement. Every route requires the
``X-Admin-Key`` header.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Path

from ..dependencies import AdminActor, DatabaseSession, Dispatcher, require_admin_key
from ...core.schemas import (
    CommissionRates,
    EndTimeOverride,
    InvoiceOut,
    ListingOut,
    PlatformSettingsOut,
    PlatformSettingsUpdate,
    SellerRatesUpdate,
    SettleRequest,
)
from ...core.services import auction_clock
from ...core.services import commissions as commissions_service
from ...core.services import settlement as settlement_service


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])


@router.get("/platform-settings", response_model=PlatformSettingsOut)
async def get_platform_settings(db: DatabaseSession) -> PlatformSettingsOut:
    row = await commissions_service.get_platform_settings(db)
    return PlatformSettingsOut.model_validate(row)


@router.patch("/platform-settings", response_model=PlatformSettingsOut)
async def update_platform_settings(
    req: PlatformSettingsUpdate,
    db: DatabaseSession,
    actor: AdminActor,
) -> PlatformSettingsOut:
    """Change platform defaults. Invoices already issued keep their rates."""
    row = await commissions_service.update_platform_settings(db, actor_id=actor, **req.model_dump())
    return PlatformSettingsOut.model_validate(row)


@router.get("/sellers/{seller_id}/commission", response_model=CommissionRates)
async def get_seller_rates(
    db: DatabaseSession,
    seller_id: str = Path(..., description="Identifier of the seller."),
) -> CommissionRates:
    return await commissions_service.resolve_rates(db, seller_id)


@router.put("/sellers/{seller_id}/commission", response_model=CommissionRates)
async def set_seller_rates(
    req: SellerRatesUpdate,
    db: DatabaseSession,
    actor: AdminActor,
    seller_id: str = Path(..., description="Identifier of the seller."),
) -> CommissionRates:
    """Set or clear a seller's custom rates. Null fields fall back to the defaults."""
    return await commissions_service.set_seller_commission_rates(
        db,
        seller_id,
        req.custom_buyer_premium_percent,
        req.custom_seller_commission_percent,
        actor_id=actor,
    )


@router.put("/listings/{listing_id}/end-time", response_model=ListingOut)
async def override_end_time(
    req: EndTimeOverride,
    db: DatabaseSession,
    actor: AdminActor,
    listing_id: str = Path(..., description="Identifier of the listing."),
) -> ListingOut:
    listing = await auction_clock.override_end_time(db, listing_id, req.end_time, actor_id=actor)
    return ListingOut.model_validate(listing)


@router.post("/settlements", response_model=InvoiceOut)
async def settle(
    req: SettleRequest,
    db: DatabaseSession,
    dispatcher: Dispatcher,
) -> InvoiceOut:
    """Issue the invoice for a sale, or return the one that already exists."""
    invoice = await settlement_service.settle(
        db,
        dispatcher,
        req.listing_id,
        req.seller_id,
        req.buyer_id,
        req.sale_amount,
        source=req.source,
        offer_id=req.offer_id,
    )
    return InvoiceOut.model_validate(invoice)
