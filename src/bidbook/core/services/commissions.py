"""
Commission calculation and fee-rate resolution.

``calculate_fees`` is pure Decimal arithmetic. The percentages are applied
to the sale amount and each fee is rounded half-up to the cent before the
totals are derived, so ``total = sale + premium`` and
``payout = sale - commission`` always reconcile exactly with what is
persisted.

Rate resolution happens once, at settlement time: the seller's custom
rate wins when it is set, otherwise the platform default applies. The
two rates resolve independently.
"""
from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..events import emit_event
from ..models import EventType, PlatformSettings, SellerCommissionOverride
from ..schemas import CommissionRates, FeeBreakdown

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

logger = logging.getLogger(__name__)

Number = Union[Decimal, int, str]


def to_money(value: Number) -> Decimal:
    """Quantize a value to whole cents, rounding half-up."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_fees(sale_amount: Number, rates: CommissionRates) -> FeeBreakdown:
    """Calculate fee amounts for a transaction.

    >>> rates = CommissionRates(buyer_premium_percent=8, seller_commission_percent=8)
    >>> calculate_fees(Decimal("10000"), rates).total_buyer_pays
    Decimal('10800.00')
    """
    sale = to_money(sale_amount)
    if sale < 0:
        raise ValueError("sale amount cannot be negative")
    buyer_premium = to_money(sale * Decimal(rates.buyer_premium_percent) / HUNDRED)
    seller_commission = to_money(sale * Decimal(rates.seller_commission_percent) / HUNDRED)
    return FeeBreakdown(
        sale_amount=sale,
        buyer_premium_amount=buyer_premium,
        seller_commission_amount=seller_commission,
        total_buyer_pays=sale + buyer_premium,
        seller_payout_amount=sale - seller_commission,
        platform_earnings=buyer_premium + seller_commission,
    )


async def get_platform_settings(db: AsyncSession) -> PlatformSettings:
    """Load the platform settings row, seeding it from configuration if absent."""
    row = await db.get(PlatformSettings, 1)
    if row is None:
        settings = get_settings()
        row = PlatformSettings(
            id=1,
            default_buyer_premium_percent=settings.default_buyer_premium_percent,
            default_seller_commission_percent=settings.default_seller_commission_percent,
            auction_extension_minutes=settings.default_auction_extension_minutes,
            offer_expiry_hours=settings.default_offer_expiry_hours,
        )
        try:
            async with db.begin_nested():
                db.add(row)
        except IntegrityError:
            # Seeded concurrently by another worker.
            row = await db.get(PlatformSettings, 1, populate_existing=True)
        else:
            logger.info("Seeded platform settings from configuration defaults")
    return row


async def resolve_rates(db: AsyncSession, seller_id: str) -> CommissionRates:
    """Return the commission rates in effect for a seller right now."""
    platform = await get_platform_settings(db)
    override = (
        await db.execute(
            select(SellerCommissionOverride).where(SellerCommissionOverride.seller_id == seller_id)
        )
    ).scalar_one_or_none()
    custom_premium = override.custom_buyer_premium_percent if override else None
    custom_commission = override.custom_seller_commission_percent if override else None
    return CommissionRates(
        buyer_premium_percent=(
            custom_premium if custom_premium is not None else platform.default_buyer_premium_percent
        ),
        seller_commission_percent=(
            custom_commission if custom_commission is not None else platform.default_seller_commission_percent
        ),
        is_custom=custom_premium is not None or custom_commission is not None,
    )


async def update_platform_settings(
    db: AsyncSession,
    actor_id: Optional[str] = None,
    default_buyer_premium_percent: Optional[Decimal] = None,
    default_seller_commission_percent: Optional[Decimal] = None,
    auction_extension_minutes: Optional[int] = None,
    offer_expiry_hours: Optional[int] = None,
) -> PlatformSettings:
    """Update platform-wide defaults. Issued invoices are unaffected."""
    row = await get_platform_settings(db)
    changes = {
        "default_buyer_premium_percent": default_buyer_premium_percent,
        "default_seller_commission_percent": default_seller_commission_percent,
        "auction_extension_minutes": auction_extension_minutes,
        "offer_expiry_hours": offer_expiry_hours,
    }
    applied = {key: value for key, value in changes.items() if value is not None}
    for key, value in applied.items():
        setattr(row, key, value)
    emit_event(
        db,
        EventType.platform_settings_updated,
        actor_id=actor_id,
        payload={key: str(value) for key, value in applied.items()},
    )
    await db.commit()
    return row


async def set_seller_commission_rates(
    db: AsyncSession,
    seller_id: str,
    custom_buyer_premium_percent: Optional[Decimal],
    custom_seller_commission_percent: Optional[Decimal],
    actor_id: Optional[str] = None,
) -> CommissionRates:
    """Set or clear a seller's custom rates and return the resulting rates.

    Passing ``None`` for a rate removes the override for that rate. When
    both are ``None`` the override row is deleted.
    """
    override = await db.get(SellerCommissionOverride, seller_id)
    if custom_buyer_premium_percent is None and custom_seller_commission_percent is None:
        if override is not None:
            await db.delete(override)
    else:
        if override is None:
            override = SellerCommissionOverride(seller_id=seller_id)
            db.add(override)
        override.custom_buyer_premium_percent = custom_buyer_premium_percent
        override.custom_seller_commission_percent = custom_seller_commission_percent
    emit_event(
        db,
        EventType.seller_rates_updated,
        actor_id=actor_id,
        payload={
            "seller_id": seller_id,
            "custom_buyer_premium_percent": _str_or_none(custom_buyer_premium_percent),
            "custom_seller_commission_percent": _str_or_none(custom_seller_commission_percent),
        },
    )
    await db.flush()
    rates = await resolve_rates(db, seller_id)
    await db.commit()
    return rates


def _str_or_none(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)
