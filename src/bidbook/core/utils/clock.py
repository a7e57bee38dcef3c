"""Time helpers. The engine stores naive UTC datetimes throughout."""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
