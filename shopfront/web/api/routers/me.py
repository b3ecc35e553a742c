"""Current user's participation history."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from shopfront.shared.database import get_db_session
from shopfront.shared.timezone import ensure_utc
from shopfront.web.api.dependencies import get_current_user
from shopfront.web.api.schemas import (
    CampaignResponse,
    LotteryResponse,
    MyCampaignResponse,
    MyLotteryEntryResponse,
)
from shopfront.web.crud import CampaignOperations, LotteryOperations
from shopfront.web.models import UserAccount

router = APIRouter(prefix="/me", tags=["Me"])


@router.get("/groups", response_model=List[MyCampaignResponse])
async def my_groups(
    session: AsyncSession = Depends(get_db_session),
    user: UserAccount = Depends(get_current_user),
) -> List[MyCampaignResponse]:
    memberships = await CampaignOperations(session).list_user_campaigns(user.id)
    return [
        MyCampaignResponse(
            campaign=CampaignResponse.from_campaign(m.campaign),
            quantity=m.units,
            contact_info=m.contact_info,
            contacted=m.contacted,
            joined_at=ensure_utc(m.joined_at),
        )
        for m in memberships
    ]


@router.get("/lotteries", response_model=List[MyLotteryEntryResponse])
async def my_lotteries(
    session: AsyncSession = Depends(get_db_session),
    user: UserAccount = Depends(get_current_user),
) -> List[MyLotteryEntryResponse]:
    entries = await LotteryOperations(session).list_user_entries(user.id)
    return [
        MyLotteryEntryResponse(
            lottery=LotteryResponse.from_lottery(e.lottery),
            entry_cost=e.entry_cost,
            is_winner=e.is_winner,
            contact_info=e.contact_info,
            entered_at=ensure_utc(e.entered_at),
        )
        for e in entries
    ]
