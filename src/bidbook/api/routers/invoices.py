"""
Invoice API router.
"""
from __future__ import annotations

from fastapi import APIRouter, Path

from ..dependencies import CurrentActor, DatabaseSession
from ...core.errors import PermissionDeniedError
from ...core.schemas import InvoiceOut
from ...core.services import settlement as settlement_service


router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.get("/{invoice_id}", response_model=InvoiceOut)
async def get_invoice(
    db: DatabaseSession,
    actor: CurrentActor,
    invoice_id: str = Path(..., description="Identifier of the invoice."),
) -> InvoiceOut:
    """Return an invoice to its buyer or seller."""
    invoice = await settlement_service.get_invoice(db, invoice_id)
    if actor not in (invoice.buyer_id, invoice.seller_id):
        raise PermissionDeniedError("Not a party to this invoice")
    return InvoiceOut.model_validate(invoice)
