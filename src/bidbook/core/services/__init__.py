"""
Service subpackage aggregating the engine's domain logic.

This package exposes the bid ledger, auction clock, offer negotiation,
commission calculation, settlement and notification services. See
individual modules for details.
"""
from . import (  # noqa: F401
    auction_clock,
    bids,
    commissions,
    listings,
    notifications,
    offers,
    settlement,
)
