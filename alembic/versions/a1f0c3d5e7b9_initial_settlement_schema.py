"""Initial settlement schema.

Revision ID: a1f0c3d5e7b9
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "a1f0c3d5e7b9"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(12, 2)
PERCENT = sa.Numeric(5, 2)

listing_type = sa.Enum("auction", "fixed_price", "hybrid", name="listingtype")
listing_status = sa.Enum("scheduled", "active", "processing", "sold", "unsold", name="listingstatus")
bid_status = sa.Enum("active", "outbid", "retracted", name="bidstatus")
offer_status = sa.Enum(
    "pending", "accepted", "rejected", "countered", "withdrawn", "expired", name="offerstatus"
)
invoice_status = sa.Enum("pending", "paid", name="invoicestatus")
fulfillment_status = sa.Enum(
    "awaiting_payment", "paid", "shipped", "delivered", "completed", name="fulfillmentstatus"
)
sale_source = sa.Enum("auction", "offer", name="salesource")
event_type = sa.Enum(
    "bid_placed",
    "proxy_bid_placed",
    "bid_ceiling_raised",
    "auction_extended",
    "auction_end_overridden",
    "auction_sold",
    "auction_unsold",
    "listing_activated",
    "offer_created",
    "offer_accepted",
    "offer_rejected",
    "offer_countered",
    "offer_withdrawn",
    "offer_expired",
    "invoice_issued",
    "platform_settings_updated",
    "seller_rates_updated",
    name="eventtype",
)


def upgrade() -> None:
    op.create_table(
        "listings",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("seller_id", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("listing_type", listing_type, nullable=False),
        sa.Column("status", listing_status, nullable=False),
        sa.Column("starting_price", MONEY, nullable=False),
        sa.Column("reserve_price", MONEY, nullable=True),
        sa.Column("current_price", MONEY, nullable=False),
        sa.Column("bid_count", sa.Integer(), nullable=False),
        sa.Column("accept_offers", sa.Boolean(), nullable=False),
        sa.Column("auto_accept_price", MONEY, nullable=True),
        sa.Column("auto_decline_price", MONEY, nullable=True),
        sa.Column("start_time", sa.DateTime(), nullable=True),
        sa.Column("end_time", sa.DateTime(), nullable=True),
        sa.Column("original_end_time", sa.DateTime(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.Column("ended_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_listings_seller_id", "listings", ["seller_id"])
    op.create_index("ix_listings_status_end_time", "listings", ["status", "end_time"])

    op.create_table(
        "bids",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("listing_id", sa.String(length=36), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("bidder_id", sa.String(length=64), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("max_bid", MONEY, nullable=True),
        sa.Column("is_auto", sa.Boolean(), nullable=False),
        sa.Column("status", bid_status, nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("listing_id", "sequence", name="uix_bid_sequence"),
    )
    op.create_index("ix_bids_listing_status", "bids", ["listing_id", "status"])

    op.create_table(
        "offers",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("listing_id", sa.String(length=36), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("buyer_id", sa.String(length=64), nullable=False),
        sa.Column("seller_id", sa.String(length=64), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("status", offer_status, nullable=False),
        sa.Column("parent_offer_id", sa.String(length=36), sa.ForeignKey("offers.id"), nullable=True),
        sa.Column("root_offer_id", sa.String(length=36), nullable=False),
        sa.Column("counter_count", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("responded_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_offers_listing_id", "offers", ["listing_id"])
    op.create_index("ix_offers_root_offer_id", "offers", ["root_offer_id"])
    op.create_index("ix_offers_status_expires_at", "offers", ["status", "expires_at"])

    op.create_table(
        "platform_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("default_buyer_premium_percent", PERCENT, nullable=False),
        sa.Column("default_seller_commission_percent", PERCENT, nullable=False),
        sa.Column("auction_extension_minutes", sa.Integer(), nullable=False),
        sa.Column("offer_expiry_hours", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "seller_commission_overrides",
        sa.Column("seller_id", sa.String(length=64), primary_key=True),
        sa.Column("custom_buyer_premium_percent", PERCENT, nullable=True),
        sa.Column("custom_seller_commission_percent", PERCENT, nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "invoices",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("invoice_number", sa.String(length=20), nullable=False, unique=True),
        sa.Column("listing_id", sa.String(length=36), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("seller_id", sa.String(length=64), nullable=False),
        sa.Column("buyer_id", sa.String(length=64), nullable=False),
        sa.Column("offer_id", sa.String(length=36), sa.ForeignKey("offers.id"), nullable=True),
        sa.Column("source", sale_source, nullable=False),
        sa.Column("sale_amount", MONEY, nullable=False),
        sa.Column("buyer_premium_percent", PERCENT, nullable=False),
        sa.Column("buyer_premium_amount", MONEY, nullable=False),
        sa.Column("seller_commission_percent", PERCENT, nullable=False),
        sa.Column("seller_commission_amount", MONEY, nullable=False),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column("seller_payout_amount", MONEY, nullable=False),
        sa.Column("status", invoice_status, nullable=False),
        sa.Column("fulfillment_status", fulfillment_status, nullable=False),
        sa.Column("payment_due_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("listing_id", "seller_id", name="uix_invoice_listing_seller"),
    )

    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_type", event_type, nullable=False),
        sa.Column("actor_id", sa.String(length=64), nullable=True),
        sa.Column("listing_id", sa.String(length=36), nullable=True),
        sa.Column("offer_id", sa.String(length=36), nullable=True),
        sa.Column("invoice_id", sa.String(length=36), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_events_listing_id", "events", ["listing_id"])


def downgrade() -> None:
    op.drop_index("ix_events_listing_id", table_name="events")
    op.drop_table("events")
    op.drop_table("invoices")
    op.drop_table("seller_commission_overrides")
    op.drop_table("platform_settings")
    op.drop_index("ix_offers_status_expires_at", table_name="offers")
    op.drop_index("ix_offers_root_offer_id", table_name="offers")
    op.drop_index("ix_offers_listing_id", table_name="offers")
    op.drop_table("offers")
    op.drop_index("ix_bids_listing_status", table_name="bids")
    op.drop_table("bids")
    op.drop_index("ix_listings_status_end_time", table_name="listings")
    op.drop_index("ix_listings_seller_id", table_name="listings")
    op.drop_table("listings")
    bind = op.get_bind()
    for enum in (
        event_type,
        sale_source,
        fulfillment_status,
        invoice_status,
        offer_status,
        bid_status,
        listing_status,
        listing_type,
    ):
        enum.drop(bind, checkfirst=True)
