"""Request dependencies: caller identity, admin checks and the cron key.

Authentication happens upstream; the gateway forwards the authenticated
user id in the ``X-User-Id`` header (with optional ``X-User-Name`` and
``X-User-Email``). Accounts are created on first sight.
"""

from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from shopfront.shared.config import get_settings
from shopfront.shared.database import get_db_session
from shopfront.web.crud import PointsOperations
from shopfront.web.models import UserAccount

logger = logging.getLogger(__name__)

cron_bearer = HTTPBearer(auto_error=False)


async def get_optional_user(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_user_name: Optional[str] = Header(None, alias="X-User-Name"),
    x_user_email: Optional[str] = Header(None, alias="X-User-Email"),
    session: AsyncSession = Depends(get_db_session),
) -> Optional[UserAccount]:
    """Resolve the caller's account, or ``None`` for anonymous requests.

    A blank or whitespace-only user id counts as anonymous.
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        return None

    return await PointsOperations(session).get_or_create_account(
        user_id,
        name=x_user_name,
        email=x_user_email,
    )


async def get_current_user(
    user: Optional[UserAccount] = Depends(get_optional_user),
) -> UserAccount:
    """Require an authenticated caller.

    Raises:
        HTTPException: 401 if no user id was forwarded
    """
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user


async def require_admin(user: UserAccount = Depends(get_current_user)) -> UserAccount:
    """Require an admin caller.

    Raises:
        HTTPException: 403 if the caller isn't an admin
    """
    if not user.is_admin:
        logger.warning(f"Admin access denied for user {user.id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


async def verify_cron_key(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(cron_bearer),
) -> None:
    """Check the scheduler's bearer token when one is configured.

    Raises:
        HTTPException: 401 if the token is missing or wrong
    """
    expected = get_settings().cron_api_key
    if not expected:
        return

    if credentials is None or not secrets.compare_digest(credentials.credentials, expected):
        logger.warning("Rejected auto-draw call with missing or invalid cron key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron key",
            headers={"WWW-Authenticate": "Bearer"},
        )
