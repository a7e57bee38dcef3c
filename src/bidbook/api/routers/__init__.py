"""
Routing subpackage.

This module exposes the routers for listings, offers, invoices, sweeps
and admin so they can be imported succinctly in ``api/main.py``.
"""
from . import (  # noqa: F401
    admin,
    invoices,
    listings,
    offers,
    sweeps,
)
