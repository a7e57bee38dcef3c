"""
Tests for the commission calculator and rate resolution.
"""
from decimal import Decimal

import pytest

from bidbook.core.models import ListingStatus
from bidbook.core.schemas import CommissionRates
from bidbook.core.services.commissions import (
    calculate_fees,
    get_platform_settings,
    resolve_rates,
    set_seller_commission_rates,
    update_platform_settings,
)
from bidbook.core.services.settlement import settle

from conftest import T0


def test_fees_at_eight_percent_each_way() -> None:
    rates = CommissionRates(buyer_premium_percent=Decimal("8"), seller_commission_percent=Decimal("8"))
    fees = calculate_fees(Decimal("10000"), rates)
    assert fees.buyer_premium_amount == Decimal("800.00")
    assert fees.seller_commission_amount == Decimal("800.00")
    assert fees.total_buyer_pays == Decimal("10800.00")
    assert fees.seller_payout_amount == Decimal("9200.00")
    assert fees.platform_earnings == Decimal("1600.00")


def test_fees_round_half_up_to_the_cent() -> None:
    rates = CommissionRates(buyer_premium_percent=Decimal("5"), seller_commission_percent=Decimal("8"))
    fees = calculate_fees(Decimal("99.99"), rates)
    # 4.9995 and 7.9992 before rounding
    assert fees.buyer_premium_amount == Decimal("5.00")
    assert fees.seller_commission_amount == Decimal("8.00")
    assert fees.total_buyer_pays == fees.sale_amount + fees.buyer_premium_amount
    assert fees.seller_payout_amount == Decimal("91.99")


def test_zero_rates_and_negative_amounts() -> None:
    rates = CommissionRates(buyer_premium_percent=Decimal("0"), seller_commission_percent=Decimal("0"))
    fees = calculate_fees(Decimal("250"), rates)
    assert fees.total_buyer_pays == fees.seller_payout_amount == Decimal("250.00")
    with pytest.raises(ValueError):
        calculate_fees(Decimal("-1"), rates)


@pytest.mark.asyncio
async def test_platform_settings_seeded_from_configuration(db) -> None:
    row = await get_platform_settings(db)
    assert row.default_buyer_premium_percent == Decimal("5.0")
    assert row.default_seller_commission_percent == Decimal("8.0")
    assert row.auction_extension_minutes == 2
    assert row.offer_expiry_hours == 48


@pytest.mark.asyncio
async def test_seller_override_resolves_per_rate(db) -> None:
    rates = await resolve_rates(db, "seller-1")
    assert not rates.is_custom
    assert rates.seller_commission_percent == Decimal("8.0")

    rates = await set_seller_commission_rates(db, "seller-1", None, Decimal("3.5"))
    assert rates.is_custom
    assert rates.buyer_premium_percent == Decimal("5.0")
    assert rates.seller_commission_percent == Decimal("3.5")

    rates = await set_seller_commission_rates(db, "seller-1", None, None)
    assert not rates.is_custom
    assert rates.seller_commission_percent == Decimal("8.0")


@pytest.mark.asyncio
async def test_issued_invoice_keeps_rates_after_defaults_change(db, dispatcher, make_listing) -> None:
    listing = await make_listing(status=ListingStatus.sold)
    invoice = await settle(db, dispatcher, listing.id, "seller-1", "alice", Decimal("200"), now=T0)
    assert invoice.buyer_premium_amount == Decimal("10.00")

    await update_platform_settings(db, default_buyer_premium_percent=Decimal("12.5"))
    again = await settle(db, dispatcher, listing.id, "seller-1", "alice", Decimal("200"), now=T0)

    assert again.id == invoice.id
    assert again.buyer_premium_percent == Decimal("5.0")
    assert again.buyer_premium_amount == Decimal("10.00")
    rates = await resolve_rates(db, "seller-1")
    assert rates.buyer_premium_percent == Decimal("12.5")
