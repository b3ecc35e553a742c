"""Points API router: balance, history and daily check-in."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from shopfront.shared.database import get_db_session
from shopfront.web.api.dependencies import get_current_user
from shopfront.web.api.schemas import (
    CheckInResponse,
    CheckInStatusResponse,
    PointLogResponse,
    PointsResponse,
)
from shopfront.web.crud import PointsOperations
from shopfront.web.models import UserAccount

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/points", tags=["Points"])


@router.get("", response_model=PointsResponse)
async def get_points(
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    session: AsyncSession = Depends(get_db_session),
    user: UserAccount = Depends(get_current_user),
) -> PointsResponse:
    """Current balance and point history, newest first."""
    ops = PointsOperations(session)
    account = await ops.get_account(user.id)
    logs = await ops.get_history(user.id, limit=limit)
    return PointsResponse(
        points=account.points,
        logs=[PointLogResponse.from_log(log) for log in logs],
    )


@router.get("/check-in", response_model=CheckInStatusResponse)
async def get_check_in_status(
    session: AsyncSession = Depends(get_db_session),
    user: UserAccount = Depends(get_current_user),
) -> CheckInStatusResponse:
    state = await PointsOperations(session).check_in_status(user.id)
    return CheckInStatusResponse(
        points=state.points,
        streak=state.streak,
        last_check_in=state.last_check_in,
        can_check_in=state.can_check_in,
    )


@router.post("/check-in", response_model=CheckInResponse)
async def check_in(
    session: AsyncSession = Depends(get_db_session),
    user: UserAccount = Depends(get_current_user),
) -> CheckInResponse:
    """Check in for today; a second attempt on the same day is a conflict."""
    result = await PointsOperations(session).check_in(user.id)
    return CheckInResponse(
        points_earned=result.points_earned,
        streak=result.streak,
        points=result.balance,
        checked_in_at=result.checked_in_at,
    )
