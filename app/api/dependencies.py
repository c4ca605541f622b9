"""
FastAPI Dependencies - Service authentication and member resolution.

NO DICTIONARIES - All dependencies return typed objects.
"""

import secrets
from collections.abc import Callable
from datetime import datetime

from fastapi import Header, HTTPException, status
from structlog import get_logger

from app.config import settings
from app.db.models import utc_now
from app.models.domain import MemberIdentity

logger = get_logger(__name__)


# ============================================================================
# API Key Authentication (for service-to-service)
# ============================================================================


async def require_api_key(
    x_api_key: str | None = Header(None, description="Service API key"),
) -> str:
    """
    FastAPI dependency to validate the X-API-Key header.

    Keys are compared in constant time against settings.valid_api_keys.

    Returns:
        Short key prefix for logging

    Raises:
        HTTPException 401 if missing or unknown
    """
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-API-Key header required",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    matched = False
    for candidate in settings.valid_api_keys:
        if secrets.compare_digest(x_api_key.encode(), candidate.encode()):
            matched = True

    if not matched:
        logger.warning("api_key_rejected", key_prefix=x_api_key[:8])
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return x_api_key[:8]


# ============================================================================
# Member Identity
# ============================================================================


async def get_member_identity(
    x_member_external_id: str | None = Header(
        None, description="External identity of the member acting"
    ),
) -> MemberIdentity:
    """
    Resolve the acting member from the X-Member-External-Id header.

    The calling service has already authenticated the member.

    Raises:
        HTTPException 401 if the header is missing or blank
    """
    if not x_member_external_id or not x_member_external_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Member-External-Id header required",
        )
    return MemberIdentity(external_id=x_member_external_id.strip())


# ============================================================================
# Clock
# ============================================================================


def get_clock() -> Callable[[], datetime]:
    """Source of "now" for policy decisions. Overridden in tests."""
    return utc_now
