"""
Database models for the settlement engine.

This module defines the ORM classes for listings, the bid ledger, offer
chains, fee settings, invoices and the audit event log. The models are
designed with SQLAlchemy's asynchronous support in mind; relationships
are kept to a minimum so that every query stays explicit.

Identifiers are UUID4 strings and are never reused across entities.
Monetary columns are ``NUMERIC`` and map to :class:`decimal.Decimal`.
All timestamps are naive UTC.

If you modify these models, remember to generate and apply an Alembic
migration for persistent databases. For tests and development the
``init_db_schema`` helper can create tables on the fly.
"""
from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base
from .utils.clock import utcnow

Money = Numeric(12, 2)
Percent = Numeric(5, 2)


def new_id() -> str:
    return str(uuid.uuid4())


class ListingType(enum.Enum):
    """How a listing can be sold."""

    auction = "auction"
    fixed_price = "fixed_price"
    hybrid = "hybrid"


class ListingStatus(enum.Enum):
    """Lifecycle of a listing.

    ``processing`` is the claim marker a sweep sets while it resolves an
    ended auction into ``sold`` or ``unsold``.
    """

    scheduled = "scheduled"
    active = "active"
    processing = "processing"
    sold = "sold"
    unsold = "unsold"


class BidStatus(enum.Enum):
    active = "active"
    outbid = "outbid"
    retracted = "retracted"


class OfferStatus(enum.Enum):
    """State of a single node in an offer chain. Only ``pending`` is open."""

    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"
    countered = "countered"
    withdrawn = "withdrawn"
    expired = "expired"


class InvoiceStatus(enum.Enum):
    pending = "pending"
    paid = "paid"


class FulfillmentStatus(enum.Enum):
    awaiting_payment = "awaiting_payment"
    paid = "paid"
    shipped = "shipped"
    delivered = "delivered"
    completed = "completed"


class SaleSource(enum.Enum):
    """What produced the winning transaction behind an invoice."""

    auction = "auction"
    offer = "offer"


class EventType(enum.Enum):
    """Audit event taxonomy."""

    bid_placed = "BID_PLACED"
    proxy_bid_placed = "PROXY_BID_PLACED"
    bid_ceiling_raised = "BID_CEILING_RAISED"
    auction_extended = "AUCTION_EXTENDED"
    auction_end_overridden = "AUCTION_END_OVERRIDDEN"
    auction_sold = "AUCTION_SOLD"
    auction_unsold = "AUCTION_UNSOLD"
    listing_activated = "LISTING_ACTIVATED"
    offer_created = "OFFER_CREATED"
    offer_accepted = "OFFER_ACCEPTED"
    offer_rejected = "OFFER_REJECTED"
    offer_countered = "OFFER_COUNTERED"
    offer_withdrawn = "OFFER_WITHDRAWN"
    offer_expired = "OFFER_EXPIRED"
    invoice_issued = "INVOICE_ISSUED"
    platform_settings_updated = "PLATFORM_SETTINGS_UPDATED"
    seller_rates_updated = "SELLER_RATES_UPDATED"


class Listing(Base):
    """A sellable item owned by a seller.

    Metadata beyond what the engine needs (description, media, shipping)
    lives with the external listing service.
    """

    __tablename__ = "listings"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(200), default="Untitled listing")
    listing_type: Mapped[ListingType] = mapped_column(Enum(ListingType), default=ListingType.auction)
    status: Mapped[ListingStatus] = mapped_column(Enum(ListingStatus), default=ListingStatus.active)
    starting_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    reserve_price: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    current_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    bid_count: Mapped[int] = mapped_column(Integer, default=0)
    accept_offers: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_accept_price: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    auto_decline_price: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    original_end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("ix_listings_status_end_time", "status", "end_time"),)

    @property
    def takes_bids(self) -> bool:
        return self.listing_type in (ListingType.auction, ListingType.hybrid)


class Bid(Base):
    """One entry of a listing's bid ledger.

    ``max_bid`` is the hidden proxy ceiling. ``sequence`` is the placement
    ordinal within the listing and decides ties between equal ceilings.
    """

    __tablename__ = "bids"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    listing_id: Mapped[str] = mapped_column(ForeignKey("listings.id"), nullable=False)
    bidder_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    max_bid: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    is_auto: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[BidStatus] = mapped_column(Enum(BidStatus), default=BidStatus.active)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("listing_id", "sequence", name="uix_bid_sequence"),
        Index("ix_bids_listing_status", "listing_id", "status"),
    )

    @property
    def ceiling(self) -> Decimal:
        return self.max_bid if self.max_bid is not None else self.amount


class Offer(Base):
    """A node in a buyer/seller negotiation chain.

    ``root_offer_id`` points at the chain head (itself for the head) and
    keys the chain's lock. Even ``counter_count`` nodes are authored by the
    buyer, odd ones by the seller.
    """

    __tablename__ = "offers"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    listing_id: Mapped[str] = mapped_column(ForeignKey("listings.id"), nullable=False, index=True)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[OfferStatus] = mapped_column(Enum(OfferStatus), default=OfferStatus.pending)
    parent_offer_id: Mapped[Optional[str]] = mapped_column(ForeignKey("offers.id"), nullable=True)
    root_offer_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    counter_count: Mapped[int] = mapped_column(Integer, default=0)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (Index("ix_offers_status_expires_at", "status", "expires_at"),)

    @property
    def made_by_buyer(self) -> bool:
        return self.counter_count % 2 == 0

    @property
    def author_id(self) -> str:
        return self.buyer_id if self.made_by_buyer else self.seller_id

    @property
    def responder_id(self) -> str:
        return self.seller_id if self.made_by_buyer else self.buyer_id


class PlatformSettings(Base):
    """Singleton row holding platform-wide fee and timing defaults."""

    __tablename__ = "platform_settings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    default_buyer_premium_percent: Mapped[Decimal] = mapped_column(Percent, nullable=False)
    default_seller_commission_percent: Mapped[Decimal] = mapped_column(Percent, nullable=False)
    auction_extension_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    offer_expiry_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class SellerCommissionOverride(Base):
    """Per-seller fee rates. A null column falls back to the platform default."""

    __tablename__ = "seller_commission_overrides"
    seller_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    custom_buyer_premium_percent: Mapped[Optional[Decimal]] = mapped_column(Percent, nullable=True)
    custom_seller_commission_percent: Mapped[Optional[Decimal]] = mapped_column(Percent, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class Invoice(Base):
    """The single settlement record of a winning transaction.

    Rates are copied onto the row at issue time; later changes to the
    defaults or overrides never touch an issued invoice.
    """

    __tablename__ = "invoices"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    invoice_number: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    listing_id: Mapped[str] = mapped_column(ForeignKey("listings.id"), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    offer_id: Mapped[Optional[str]] = mapped_column(ForeignKey("offers.id"), nullable=True)
    source: Mapped[SaleSource] = mapped_column(Enum(SaleSource), nullable=False)
    sale_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    buyer_premium_percent: Mapped[Decimal] = mapped_column(Percent, nullable=False)
    buyer_premium_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    seller_commission_percent: Mapped[Decimal] = mapped_column(Percent, nullable=False)
    seller_commission_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    seller_payout_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(Enum(InvoiceStatus), default=InvoiceStatus.pending)
    fulfillment_status: Mapped[FulfillmentStatus] = mapped_column(
        Enum(FulfillmentStatus), default=FulfillmentStatus.awaiting_payment
    )
    payment_due_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (UniqueConstraint("listing_id", "seller_id", name="uix_invoice_listing_seller"),)


class Event(Base):
    """Append-only log of engine events."""

    __tablename__ = "events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_type: Mapped[EventType] = mapped_column(Enum(EventType), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    listing_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    offer_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    invoice_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
