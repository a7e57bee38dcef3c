"""
Settlement: turning a won auction or accepted offer into one invoice.

An invoice is keyed by ``(listing_id, seller_id)``. Issuing is idempotent:
the existing invoice is returned unchanged when one is already there.
The lookup-then-insert runs under the listing and invoice locks and the insert itself
sits in a SAVEPOINT, so a concurrent insert from another worker surfaces
as an ``IntegrityError`` on the unique constraint and resolves to the
winner's row instead of a duplicate.

``issue_invoice`` stages the invoice inside the caller's transaction; the
auction sweep and offer acceptance use it so that the listing status
change and the invoice commit together. ``settle`` is the standalone
entry point that owns its transaction and notifies after commit.
"""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..errors import ConflictError, NotFoundError, ValidationError
from ..events import emit_event
from ..locks import get_lock_registry, invoice_key, listing_key
from ..models import EventType, FulfillmentStatus, Invoice, InvoiceStatus, Listing, ListingStatus, SaleSource
from ..utils.clock import utcnow
from .commissions import calculate_fees, resolve_rates, to_money
from .notifications import (
    NotificationDispatcher,
    NotificationType,
    OutboundNotification,
    dispatch_notifications,
    format_money,
)

INVOICE_NUMBER_ATTEMPTS = 5
# Listings a standalone settlement may invoice.
SETTLEABLE_STATUSES = (ListingStatus.sold, ListingStatus.processing)

logger = logging.getLogger(__name__)


def generate_invoice_number(now: Optional[datetime] = None) -> str:
    """Return an invoice number of the form ``INV-YYYYMMDD-XXXX``."""
    now = now or utcnow()
    return f"INV-{now:%Y%m%d}-{secrets.token_hex(2).upper()}"


async def find_invoice(
    db: AsyncSession, listing_id: str, seller_id: str, refresh: bool = False
) -> Optional[Invoice]:
    stmt = select(Invoice).where(Invoice.listing_id == listing_id, Invoice.seller_id == seller_id)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    return (await db.execute(stmt)).scalar_one_or_none()


async def issue_invoice(
    db: AsyncSession,
    listing_id: str,
    seller_id: str,
    buyer_id: str,
    sale_amount: Decimal,
    source: SaleSource,
    offer_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[Invoice, bool]:
    """Stage the invoice for a sale, or return the one already issued.

    The caller must hold the invoice lock and commit. Returns the invoice
    and whether it was created by this call.
    """
    existing = await find_invoice(db, listing_id, seller_id)
    if existing is not None:
        logger.info("Invoice %s already issued for listing %s", existing.id, listing_id)
        return existing, False

    now = now or utcnow()
    rates = await resolve_rates(db, seller_id)
    fees = calculate_fees(sale_amount, rates)
    payment_due = (now + timedelta(days=get_settings().payment_due_days)).date()

    for _ in range(INVOICE_NUMBER_ATTEMPTS):
        invoice = Invoice(
            invoice_number=generate_invoice_number(now),
            listing_id=listing_id,
            seller_id=seller_id,
            buyer_id=buyer_id,
            offer_id=offer_id,
            source=source,
            sale_amount=fees.sale_amount,
            buyer_premium_percent=rates.buyer_premium_percent,
            buyer_premium_amount=fees.buyer_premium_amount,
            seller_commission_percent=rates.seller_commission_percent,
            seller_commission_amount=fees.seller_commission_amount,
            total_amount=fees.total_buyer_pays,
            seller_payout_amount=fees.seller_payout_amount,
            status=InvoiceStatus.pending,
            fulfillment_status=FulfillmentStatus.awaiting_payment,
            payment_due_date=payment_due,
            created_at=now,
        )
        try:
            async with db.begin_nested():
                db.add(invoice)
        except IntegrityError:
            existing = await find_invoice(db, listing_id, seller_id, refresh=True)
            if existing is not None:
                logger.info("Concurrent settlement of listing %s resolved to invoice %s", listing_id, existing.id)
                return existing, False
            # Invoice number collision; draw another one.
            continue
        emit_event(
            db,
            EventType.invoice_issued,
            actor_id=None,
            listing_id=listing_id,
            offer_id=offer_id,
            invoice_id=invoice.id,
            payload={
                "invoice_number": invoice.invoice_number,
                "source": source.value,
                "sale_amount": str(invoice.sale_amount),
                "total_amount": str(invoice.total_amount),
                "seller_payout_amount": str(invoice.seller_payout_amount),
                "custom_rates": rates.is_custom,
            },
        )
        logger.info(
            "Issued invoice %s (%s) for listing %s: sale %s, total %s",
            invoice.id,
            invoice.invoice_number,
            listing_id,
            invoice.sale_amount,
            invoice.total_amount,
        )
        return invoice, True
    raise RuntimeError(f"Could not allocate a unique invoice number for listing {listing_id}")


def invoice_notifications(invoice: Invoice, listing_title: str) -> List[OutboundNotification]:
    """Buyer notice plus seller confirmation for a freshly issued invoice."""
    sale = format_money(invoice.sale_amount)
    total = format_money(invoice.total_amount)
    due = invoice.payment_due_date.isoformat()
    if invoice.source is SaleSource.offer:
        buyer = OutboundNotification(
            user_id=invoice.buyer_id,
            type=NotificationType.offer_accepted,
            title="Offer Accepted!",
            body=f'Your offer of {sale} for "{listing_title}" has been accepted. '
            f"Total due {total}, payment due by {due}.",
            listing_id=invoice.listing_id,
            invoice_id=invoice.id,
            offer_id=invoice.offer_id,
        )
        seller = OutboundNotification(
            user_id=invoice.seller_id,
            type=NotificationType.offer_accepted,
            title="Offer Accepted",
            body=f'You accepted an offer of {sale} for "{listing_title}". '
            f"Your payout after commission: {format_money(invoice.seller_payout_amount)}.",
            listing_id=invoice.listing_id,
            invoice_id=invoice.id,
            offer_id=invoice.offer_id,
        )
    else:
        buyer = OutboundNotification(
            user_id=invoice.buyer_id,
            type=NotificationType.auction_won,
            title="Congratulations! You won the auction!",
            body=f'You won "{listing_title}" with a bid of {sale}. Total due (including '
            f"{invoice.buyer_premium_percent}% buyer premium): {total}. Payment is due by {due}.",
            listing_id=invoice.listing_id,
            invoice_id=invoice.id,
        )
        seller = OutboundNotification(
            user_id=invoice.seller_id,
            type=NotificationType.auction_ended,
            title="Your auction has ended - SOLD!",
            body=f'"{listing_title}" sold for {sale}. '
            f"Your payout after commission: {format_money(invoice.seller_payout_amount)}.",
            listing_id=invoice.listing_id,
            invoice_id=invoice.id,
        )
    return [buyer, seller]


async def settle(
    db: AsyncSession,
    dispatcher: NotificationDispatcher,
    listing_id: str,
    seller_id: str,
    buyer_id: str,
    sale_amount: Decimal,
    source: SaleSource = SaleSource.auction,
    offer_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Invoice:
    """Issue (or return) the invoice for a sale and notify after commit.

    Safe to call any number of times, concurrently or as a retry of a
    trigger that already succeeded: exactly one invoice exists afterwards
    for the ``(listing_id, seller_id)`` pair. Only a listing that is
    ``sold`` or being closed by the sweep can be invoiced.
    """
    if buyer_id == seller_id:
        raise ValidationError("Buyer and seller must differ")
    amount = to_money(sale_amount)
    if amount <= 0:
        raise ValidationError("Sale amount must be positive")

    locks = get_lock_registry()
    async with locks.hold(listing_key(listing_id)), locks.hold(invoice_key(listing_id, seller_id)):
        try:
            listing = await db.get(Listing, listing_id, populate_existing=True)
            if listing is None:
                raise NotFoundError(f"Listing {listing_id} not found")
            if listing.seller_id != seller_id:
                raise ValidationError("Seller does not own this listing")
            if listing.status not in SETTLEABLE_STATUSES:
                raise ConflictError(f"Listing is {listing.status.value}, it has not been sold")
            title = listing.title
            invoice, created = await issue_invoice(
                db, listing_id, seller_id, buyer_id, amount, source, offer_id=offer_id, now=now
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    if created:
        await dispatch_notifications(dispatcher, invoice_notifications(invoice, title))
    return invoice


async def get_invoice(db: AsyncSession, invoice_id: str) -> Invoice:
    invoice = await db.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice
