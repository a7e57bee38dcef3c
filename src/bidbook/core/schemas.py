"""
Pydantic models for service results and API requests and responses.

These models define the fixed shapes that leave the engine. Where
possible they reuse the enumerations from the ORM models to ensure
consistency across layers. Monetary fields are ``Decimal`` and serialise
as strings so no consumer ever sees a float.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import (
    BidStatus,
    FulfillmentStatus,
    InvoiceStatus,
    ListingStatus,
    ListingType,
    OfferStatus,
    SaleSource,
)


class CommissionRates(BaseModel):
    """Fee rates in effect for one seller at one point in time."""

    buyer_premium_percent: Decimal
    seller_commission_percent: Decimal
    is_custom: bool = False


class FeeBreakdown(BaseModel):
    """Result of the commission calculator."""

    sale_amount: Decimal
    buyer_premium_amount: Decimal
    seller_commission_amount: Decimal
    total_buyer_pays: Decimal
    seller_payout_amount: Decimal
    platform_earnings: Decimal


class ListingOut(BaseModel):
    """Public view of a listing. The reserve amount is never exposed."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    seller_id: str
    title: str
    listing_type: ListingType
    status: ListingStatus
    starting_price: Decimal
    current_price: Decimal
    bid_count: int
    accept_offers: bool
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class BidOut(BaseModel):
    """A ledger entry. The proxy ceiling stays hidden."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    listing_id: str
    bidder_id: str
    amount: Decimal
    is_auto: bool
    status: BidStatus
    sequence: int
    created_at: datetime


class PlaceBidRequest(BaseModel):
    """Request payload for placing a bid."""

    amount: Decimal = Field(..., gt=0, description="Visible bid amount.")
    max_bid: Optional[Decimal] = Field(None, gt=0, description="Optional hidden proxy ceiling.")
    is_auto: bool = Field(False, description="Whether the bid was placed by an automated agent.")


class BidPlacementResult(BaseModel):
    """Outcome of a bid placement after proxy resolution."""

    bid_id: Optional[str] = Field(None, description="Ledger entry created for the caller's bid, if any.")
    current_price: Decimal
    winning_bid_id: str
    winning_bidder_id: str
    outbid: bool = Field(False, description="True when a standing proxy immediately outbid the caller.")
    ceiling_raised: bool = Field(False, description="True when the caller only raised their own proxy ceiling.")
    auction_extended: bool = False
    end_time: Optional[datetime] = None
    reserve_met: bool = False


class CreateOfferRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    message: Optional[str] = Field(None, max_length=2000)


class CounterOfferRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    message: Optional[str] = Field(None, max_length=2000)


class OfferOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    listing_id: str
    buyer_id: str
    seller_id: str
    amount: Decimal
    message: Optional[str] = None
    status: OfferStatus
    parent_offer_id: Optional[str] = None
    root_offer_id: str
    counter_count: int
    expires_at: datetime
    responded_at: Optional[datetime] = None
    created_at: datetime


class OfferActionResult(BaseModel):
    """Outcome of an offer action. ``invoice_id`` is set when a sale resulted."""

    offer: OfferOut
    counter_offer: Optional[OfferOut] = None
    invoice_id: Optional[str] = None


class InvoiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    invoice_number: str
    listing_id: str
    seller_id: str
    buyer_id: str
    offer_id: Optional[str] = None
    source: SaleSource
    sale_amount: Decimal
    buyer_premium_percent: Decimal
    buyer_premium_amount: Decimal
    seller_commission_percent: Decimal
    seller_commission_amount: Decimal
    total_amount: Decimal
    seller_payout_amount: Decimal
    status: InvoiceStatus
    fulfillment_status: FulfillmentStatus
    payment_due_date: date
    created_at: datetime


class SweepItem(BaseModel):
    """What a sweep did with one listing or offer."""

    id: str
    outcome: str = Field(..., description="e.g. sold, unsold, expired, activated, skipped, error.")
    reason: Optional[str] = None
    invoice_id: Optional[str] = None
    winner_id: Optional[str] = None
    sale_amount: Optional[Decimal] = None


class SweepReport(BaseModel):
    processed: int = 0
    items: List[SweepItem] = []


class PlatformSettingsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    default_buyer_premium_percent: Decimal
    default_seller_commission_percent: Decimal
    auction_extension_minutes: int
    offer_expiry_hours: int
    updated_at: datetime


class PlatformSettingsUpdate(BaseModel):
    default_buyer_premium_percent: Optional[Decimal] = Field(None, ge=0, le=100)
    default_seller_commission_percent: Optional[Decimal] = Field(None, ge=0, le=100)
    auction_extension_minutes: Optional[int] = Field(None, ge=0)
    offer_expiry_hours: Optional[int] = Field(None, ge=1)


class SellerRatesUpdate(BaseModel):
    """Custom rates for a seller. ``None`` clears a rate back to the default."""

    custom_buyer_premium_percent: Optional[Decimal] = Field(None, ge=0, le=100)
    custom_seller_commission_percent: Optional[Decimal] = Field(None, ge=0, le=100)


class EndTimeOverride(BaseModel):
    end_time: datetime


class SettleRequest(BaseModel):
    """Manual settlement trigger. Repeating it returns the same invoice."""

    listing_id: str
    seller_id: str
    buyer_id: str
    sale_amount: Decimal = Field(..., gt=0)
    source: SaleSource = SaleSource.auction
    offer_id: Optional[str] = None


class NotificationResult(BaseModel):
    success: bool
    push_sent: bool = False
    error: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standard error response model."""

    detail: str
