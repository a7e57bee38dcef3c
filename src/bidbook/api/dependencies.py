"""
API dependencies.

This module defines reusable dependencies for FastAPI endpoints: a
configured database session, the acting user, the notification
dispatcher and the shared-secret guards for sweeps and admin calls.

User identity is established by the surrounding gateway, which passes
the verified user id in the ``X-User-Id`` header.
"""
from __future__ import annotations

import secrets
from typing import Annotated, AsyncIterator, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.db import get_db_session
from ..core.services.notifications import NotificationDispatcher, get_notification_dispatcher


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency that yields a database session."""
    async with get_db_session() as session:
        yield session


DatabaseSession = Annotated[AsyncSession, Depends(get_db)]


async def get_actor_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> str:
    """Dependency that resolves the acting user's id."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return x_user_id


CurrentActor = Annotated[str, Depends(get_actor_id)]


def get_dispatcher() -> NotificationDispatcher:
    return get_notification_dispatcher()


Dispatcher = Annotated[NotificationDispatcher, Depends(get_dispatcher)]


def _matches(expected: Optional[str], presented: Optional[str]) -> bool:
    if not expected or not presented:
        return False
    return secrets.compare_digest(expected.encode(), presented.encode())


async def require_cron_secret(
    authorization: Optional[str] = Header(default=None),
) -> None:
    """Reject sweep calls that do not carry ``Bearer <cron_secret>``."""
    token = None
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):]
    if not _matches(get_settings().cron_secret, token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


async def require_admin_key(
    x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key"),
) -> None:
    """Reject admin calls without the configured ``X-Admin-Key``."""
    if not _matches(get_settings().admin_api_key, x_admin_key):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")


async def get_admin_actor(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> Optional[str]:
    """Admin user recorded on audit events, when the gateway supplies one."""
    return x_user_id or None


AdminActor = Annotated[Optional[str], Depends(get_admin_actor)]
