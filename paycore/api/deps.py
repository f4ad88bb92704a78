"""
Shared route dependencies: caller identity and service wiring.
Tests override the provider functions through app.dependency_overrides.
"""

import uuid
from typing import Optional

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import async_sessionmaker

from paycore.config import settings
from paycore.database import get_session_factory as _database_session_factory
from paycore.services.alert_service import AlertService
from paycore.services.payplus_service import PayPlusService


async def get_admin_user(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
) -> str:
    """
    Validate the Admin Key header.
    Returns the key if valid, raises 401 otherwise.
    """
    if not x_admin_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing admin key",
        )

    valid_key = settings.admin_api_key
    if not valid_key or x_admin_key != valid_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
        )

    return x_admin_key


async def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> uuid.UUID:
    """User id forwarded by the upstream auth gateway."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing user identity",
        )
    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user identity",
        )


def get_session_factory() -> async_sessionmaker:
    return _database_session_factory()


def get_payplus_service() -> PayPlusService:
    return PayPlusService()


def get_alert_service() -> AlertService:
    return AlertService()
