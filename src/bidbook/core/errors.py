"""
Domain errors raised by the engine's services.

Services raise these instead of HTTP exceptions so that the same calls
can be driven from the API, the sweep scheduler or a shell. The API maps
each class onto a status code in ``bidbook.api.main``.
"""
from __future__ import annotations


class MarketError(Exception):
    """Base class for all engine errors."""

    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ValidationError(MarketError):
    """Malformed input, bid below minimum or self-dealing. No state changed."""

    status_code = 400


class ConflictError(MarketError):
    """The target is no longer in the expected state. Re-fetch and retry."""

    status_code = 409


class NotFoundError(MarketError):
    """Unknown listing, offer or invoice id."""

    status_code = 404


class PermissionDeniedError(MarketError):
    """The actor is not the party allowed to perform this action."""

    status_code = 403
