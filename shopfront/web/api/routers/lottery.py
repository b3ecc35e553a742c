"""Lottery API router.

Listing (which also settles any due draws), detail, entering, and admin
endpoints for lottery maintenance, entry listing and manual draws. The
auto-draw endpoint is meant for an external scheduler and may be called
as often as needed.
"""

from __future__ import annotations

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from shopfront.shared.config import get_settings
from shopfront.shared.database import get_db_session
from shopfront.shared.timezone import local_to_utc
from shopfront.web.api.dependencies import (
    get_current_user,
    get_optional_user,
    require_admin,
    verify_cron_key,
)
from shopfront.web.api.schemas import (
    DrawRequest,
    DrawResponse,
    DrawSweepResponse,
    EnterResponse,
    EntryContactUpdate,
    LotteryCreate,
    LotteryDetailResponse,
    LotteryEntryResponse,
    LotteryResponse,
    LotteryUpdate,
    SuccessResponse,
)
from shopfront.web.crud import ConsistencyError, LotteryOperations
from shopfront.web.models import LotteryStatus, UserAccount

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/lotteries", tags=["Lotteries"])


@router.get("", response_model=List[LotteryResponse])
async def list_lotteries(
    status_filter: Optional[str] = Query(
        default=None,
        alias="status",
        pattern=f"^({LotteryStatus.PENDING}|{LotteryStatus.ENDED})$",
    ),
    session: AsyncSession = Depends(get_db_session),
) -> List[LotteryResponse]:
    """List lotteries.

    Due lotteries are drawn (or extended) first when draw-on-read is
    enabled, so the listing never shows an overdue pending lottery.
    """
    ops = LotteryOperations(session)
    if get_settings().lottery_draw_on_read:
        await ops.run_due_draws()

    lotteries = await ops.list_lotteries(status=status_filter)
    return [LotteryResponse.from_lottery(lottery) for lottery in lotteries]


@router.post("", response_model=LotteryResponse, status_code=status.HTTP_201_CREATED)
async def create_lottery(
    body: LotteryCreate,
    session: AsyncSession = Depends(get_db_session),
    admin: UserAccount = Depends(require_admin),
) -> LotteryResponse:
    """Create a lottery (admin).

    A draw date without a UTC offset is read in the display timezone.
    """
    lottery = await LotteryOperations(session).create_lottery(
        title=body.title,
        draw_date=local_to_utc(body.draw_date),
        winners_count=body.winners_count,
        entry_cost=body.entry_cost,
        min_participants=body.min_participants,
        description=body.description,
        prizes=body.prizes,
    )
    logger.info(f"Admin {admin.id} created lottery {lottery.title}")
    return LotteryResponse.from_lottery(lottery)


async def _run_auto_draw(session: AsyncSession) -> DrawSweepResponse:
    summary = await LotteryOperations(session).run_due_draws()
    return DrawSweepResponse.from_summary(summary)


@router.get("/auto-draw", response_model=DrawSweepResponse)
async def auto_draw_get(
    session: AsyncSession = Depends(get_db_session),
    _: None = Depends(verify_cron_key),
) -> DrawSweepResponse:
    """Draw or extend every due lottery (scheduler ping)."""
    return await _run_auto_draw(session)


@router.post("/auto-draw", response_model=DrawSweepResponse)
async def auto_draw_post(
    session: AsyncSession = Depends(get_db_session),
    _: None = Depends(verify_cron_key),
) -> DrawSweepResponse:
    """Draw or extend every due lottery (manual trigger)."""
    return await _run_auto_draw(session)


@router.post("/draw", response_model=DrawResponse)
async def draw_lottery(
    body: DrawRequest,
    session: AsyncSession = Depends(get_db_session),
    admin: UserAccount = Depends(require_admin),
) -> DrawResponse:
    """Draw a lottery now, regardless of its draw date (admin).

    Under-subscribed lotteries are rejected instead of extended.
    """
    outcome = await LotteryOperations(session).draw_now(body.lottery_id)
    logger.info(f"Admin {admin.id} drew lottery {body.lottery_id}: {outcome.winners_marked} winners")

    if outcome.consistency_fault:
        # The lottery stays ended; report the rejected winner marks
        await session.commit()
        raise ConsistencyError(
            f"Winner marking failed: 0 of {outcome.winners_to_pick} winners were recorded"
        )

    return DrawResponse.from_outcome(outcome)


@router.get("/{lottery_id}", response_model=LotteryDetailResponse)
async def get_lottery(
    lottery_id: UUID,
    session: AsyncSession = Depends(get_db_session),
    user: Optional[UserAccount] = Depends(get_optional_user),
) -> LotteryDetailResponse:
    """Lottery detail with live entry count and masked winner names."""
    detail = await LotteryOperations(session).get_detail(lottery_id, viewer_id=user.id if user else None)
    return LotteryDetailResponse.from_detail(detail)


@router.put("/{lottery_id}", response_model=LotteryResponse)
async def update_lottery(
    lottery_id: UUID,
    body: LotteryUpdate,
    session: AsyncSession = Depends(get_db_session),
    admin: UserAccount = Depends(require_admin),
) -> LotteryResponse:
    updates = body.model_dump(exclude_unset=True)
    if updates.get("draw_date") is not None:
        updates["draw_date"] = local_to_utc(updates["draw_date"])

    lottery = await LotteryOperations(session).update_lottery(lottery_id, updates)
    logger.info(f"Admin {admin.id} updated lottery {lottery.title}: {sorted(updates)}")
    return LotteryResponse.from_lottery(lottery)


@router.delete("/{lottery_id}", response_model=SuccessResponse)
async def delete_lottery(
    lottery_id: UUID,
    session: AsyncSession = Depends(get_db_session),
    admin: UserAccount = Depends(require_admin),
) -> SuccessResponse:
    await LotteryOperations(session).delete_lottery(lottery_id)
    logger.info(f"Admin {admin.id} deleted lottery {lottery_id}")
    return SuccessResponse()


@router.post("/{lottery_id}/enter", response_model=EnterResponse)
async def enter_lottery(
    lottery_id: UUID,
    session: AsyncSession = Depends(get_db_session),
    user: UserAccount = Depends(get_current_user),
) -> EnterResponse:
    """Enter a pending lottery, spending its entry cost in points."""
    result = await LotteryOperations(session).enter(lottery_id, user.id)
    return EnterResponse(points_spent=result.points_spent, new_points=result.balance)


@router.put("/{lottery_id}/contact", response_model=SuccessResponse)
async def update_entry_contact(
    lottery_id: UUID,
    body: EntryContactUpdate,
    session: AsyncSession = Depends(get_db_session),
    user: UserAccount = Depends(get_current_user),
) -> SuccessResponse:
    """Set contact details on the caller's entry (used to reach winners)."""
    await LotteryOperations(session).update_entry_contact(lottery_id, user.id, body.contact_info)
    return SuccessResponse()


@router.get("/{lottery_id}/entries", response_model=List[LotteryEntryResponse])
async def list_entries(
    lottery_id: UUID,
    session: AsyncSession = Depends(get_db_session),
    admin: UserAccount = Depends(require_admin),
) -> List[LotteryEntryResponse]:
    entries = await LotteryOperations(session).list_entries(lottery_id)
    return [LotteryEntryResponse.from_entry(entry) for entry in entries]
