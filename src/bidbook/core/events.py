"""
Event logging utilities.

This module centralises the logic for emitting audit events to the
database. Events are append-only records describing notable actions such
as bids placed, proxy bids synthesized, auctions closed or invoices
issued. They are written in the same transaction as the state change they
describe, so a rolled-back transition leaves no event behind.
"""
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .models import Event, EventType


def emit_event(
    session: AsyncSession,
    event_type: EventType,
    actor_id: Optional[str] = None,
    listing_id: Optional[str] = None,
    offer_id: Optional[str] = None,
    invoice_id: Optional[str] = None,
    payload: Optional[dict[str, Any]] = None,
) -> Event:
    """Stage an event record on the session.

    :param session: SQLAlchemy async session to use for DB operations.
    :param event_type: The type of the event being emitted.
    :param actor_id: The user (or ``None`` for the system) behind the event.
    :param listing_id: Listing the event concerns, if any.
    :param offer_id: Offer the event concerns, if any.
    :param invoice_id: Invoice the event concerns, if any.
    :param payload: JSON-serialisable dictionary with event details.
    :return: The created Event instance.
    """
    event = Event(
        event_type=event_type,
        actor_id=actor_id,
        listing_id=listing_id,
        offer_id=offer_id,
        invoice_id=invoice_id,
        payload=payload or {},
    )
    session.add(event)
    # Let the caller handle commit/rollback
    return event
