"""
Marketplace settlement engine package.

This package resolves competing bids and negotiated offers on listings
into one authoritative sale outcome, computes fees and issues exactly one
invoice per sale. The code is organised into subpackages for
configuration, database models, services and the HTTP API.
"""

from .core.config import Settings  # noqa: F401
