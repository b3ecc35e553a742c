"""Group-buy campaign API router.

Public listing and detail, member join/leave/edit, and admin endpoints for
campaign maintenance, participant management, moving members between
batches and manual series renewal.
"""

from __future__ import annotations

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from shopfront.shared.database import get_db_session
from shopfront.web.api.dependencies import get_current_user, require_admin
from shopfront.web.api.schemas import (
    CampaignCreate,
    CampaignResponse,
    CampaignUpdate,
    CampaignUpdateResponse,
    JoinRequest,
    JoinResponse,
    LeaveResponse,
    MembershipUpdate,
    MoveMemberRequest,
    ParticipantResponse,
    ParticipantUpdate,
    QuantityResponse,
    RenewRequest,
    RenewResponse,
    SettlementResponse,
    SuccessResponse,
)
from shopfront.web.crud import AutoRenewOperations, CampaignOperations
from shopfront.web.models import UserAccount

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/groups", tags=["Group Buys"])


@router.get("", response_model=List[CampaignResponse])
async def list_groups(
    limit: Optional[int] = Query(default=None, ge=1, le=200, description="Maximum campaigns to return"),
    session: AsyncSession = Depends(get_db_session),
) -> List[CampaignResponse]:
    """List campaigns, newest first, with derived status."""
    campaigns = await CampaignOperations(session).list_campaigns(limit=limit)
    return [CampaignResponse.from_campaign(c) for c in campaigns]


@router.post("", response_model=CampaignResponse, status_code=status.HTTP_201_CREATED)
async def create_group(
    body: CampaignCreate,
    session: AsyncSession = Depends(get_db_session),
    admin: UserAccount = Depends(require_admin),
) -> CampaignResponse:
    """Create a campaign (admin)."""
    campaign = await CampaignOperations(session).create_campaign(
        title=body.title,
        price=body.price,
        target_count=body.target_count,
        description=body.description,
        features=body.features,
        auto_renew=body.auto_renew,
        is_hot=body.is_hot,
        image_url=body.image_url,
    )
    logger.info(f"Admin {admin.id} created campaign {campaign.title}")
    return CampaignResponse.from_campaign(campaign)


@router.post("/move-member", response_model=ParticipantResponse)
async def move_member(
    body: MoveMemberRequest,
    session: AsyncSession = Depends(get_db_session),
    admin: UserAccount = Depends(require_admin),
) -> ParticipantResponse:
    """Move a participant to another campaign (admin).

    Quantities are merged when the user already holds a row in the target.
    """
    ops = CampaignOperations(session)
    await ops.move_participant(body.group_id, body.target_group_id, body.user_id)

    logger.info(
        f"Admin {admin.id} moved {body.user_id} from {body.group_id} to {body.target_group_id}"
    )
    moved = next(
        p for p in await ops.list_participants(body.target_group_id) if p.user_id == body.user_id
    )
    return ParticipantResponse.from_participant(moved)


@router.post("/renew", response_model=RenewResponse)
async def renew_group(
    body: RenewRequest,
    session: AsyncSession = Depends(get_db_session),
    admin: UserAccount = Depends(require_admin),
) -> RenewResponse:
    """Manually trigger series renewal for a campaign (admin).

    Returns the created campaign or the structured reason it was blocked.
    """
    result = await AutoRenewOperations(session).try_renew(body.group_id)
    logger.info(f"Admin {admin.id} requested renewal of {body.group_id}: {result.reason or 'renewed'}")
    return RenewResponse.from_result(result)


@router.get("/{group_id}", response_model=CampaignResponse)
async def get_group(
    group_id: UUID,
    session: AsyncSession = Depends(get_db_session),
) -> CampaignResponse:
    campaign = await CampaignOperations(session).get_campaign(group_id)
    return CampaignResponse.from_campaign(campaign)


@router.put("/{group_id}", response_model=CampaignUpdateResponse)
async def update_group(
    group_id: UUID,
    body: CampaignUpdate,
    session: AsyncSession = Depends(get_db_session),
    admin: UserAccount = Depends(require_admin),
) -> CampaignUpdateResponse:
    """Update a campaign (admin).

    Setting ``status`` to ``ended`` settles the campaign and pays out points
    once; the settlement outcome is included in the response.
    """
    updates = body.model_dump(exclude_unset=True)
    campaign, settlement = await CampaignOperations(session).update_campaign(group_id, updates)

    logger.info(f"Admin {admin.id} updated campaign {campaign.title}: {sorted(updates)}")
    return CampaignUpdateResponse(
        campaign=CampaignResponse.from_campaign(campaign),
        settlement=SettlementResponse.from_result(settlement) if settlement else None,
    )


@router.delete("/{group_id}", response_model=SuccessResponse)
async def delete_group(
    group_id: UUID,
    session: AsyncSession = Depends(get_db_session),
    admin: UserAccount = Depends(require_admin),
) -> SuccessResponse:
    await CampaignOperations(session).delete_campaign(group_id)
    logger.info(f"Admin {admin.id} deleted campaign {group_id}")
    return SuccessResponse()


@router.post("/{group_id}/join", response_model=JoinResponse)
async def join_group(
    group_id: UUID,
    body: JoinRequest,
    session: AsyncSession = Depends(get_db_session),
    user: UserAccount = Depends(get_current_user),
) -> JoinResponse:
    """Join a campaign.

    The join may land in an older batch of the same series that still has
    room; ``redirected`` reports when that happened.
    """
    result = await CampaignOperations(session).join(
        group_id,
        user.id,
        quantity=body.quantity,
        contact_info=body.contact_info,
    )
    return JoinResponse(
        campaign=CampaignResponse.from_campaign(result.campaign),
        quantity=result.participant.units,
        redirected=result.redirected_from is not None,
        redirected_from=result.redirected_from,
        renewal=RenewResponse.from_result(result.renewal) if result.renewal else None,
    )


@router.post("/{group_id}/leave", response_model=LeaveResponse)
async def leave_group(
    group_id: UUID,
    session: AsyncSession = Depends(get_db_session),
    user: UserAccount = Depends(get_current_user),
) -> LeaveResponse:
    """Withdraw from a campaign; freed seats are backfilled from the next batch."""
    result = await CampaignOperations(session).leave(group_id, user.id)
    return LeaveResponse(
        campaign=CampaignResponse.from_campaign(result.campaign),
        released=result.released,
        backfilled_quantity=result.backfilled_quantity,
        backfilled_users=result.backfilled_users,
    )


@router.put("/{group_id}/membership", response_model=QuantityResponse)
async def update_membership(
    group_id: UUID,
    body: MembershipUpdate,
    session: AsyncSession = Depends(get_db_session),
    user: UserAccount = Depends(get_current_user),
) -> QuantityResponse:
    """Change the caller's own quantity and/or contact details."""
    return await _apply_participant_update(session, group_id, user.id, body, allow_ended=False)


@router.get("/{group_id}/participants", response_model=List[ParticipantResponse])
async def list_participants(
    group_id: UUID,
    session: AsyncSession = Depends(get_db_session),
    admin: UserAccount = Depends(require_admin),
) -> List[ParticipantResponse]:
    ops = CampaignOperations(session)
    await ops.get_campaign(group_id)
    return [ParticipantResponse.from_participant(p) for p in await ops.list_participants(group_id)]


@router.put("/{group_id}/participants/{user_id}", response_model=QuantityResponse)
async def update_participant(
    group_id: UUID,
    user_id: str,
    body: ParticipantUpdate,
    session: AsyncSession = Depends(get_db_session),
    admin: UserAccount = Depends(require_admin),
) -> QuantityResponse:
    """Edit a participant's quantity, contact details or contacted flag (admin)."""
    ops = CampaignOperations(session)
    if body.contacted is not None:
        await ops.set_contacted(group_id, user_id, body.contacted)

    logger.info(f"Admin {admin.id} updated participant {user_id} in {group_id}")
    return await _apply_participant_update(session, group_id, user_id, body, allow_ended=True)


@router.delete("/{group_id}/participants/{user_id}", response_model=SuccessResponse)
async def remove_participant(
    group_id: UUID,
    user_id: str,
    session: AsyncSession = Depends(get_db_session),
    admin: UserAccount = Depends(require_admin),
) -> SuccessResponse:
    released = await CampaignOperations(session).remove_participant(group_id, user_id)
    logger.info(f"Admin {admin.id} removed {user_id} ({released}) from {group_id}")
    return SuccessResponse(message=f"Released {released}")


async def _apply_participant_update(
    session: AsyncSession,
    group_id: UUID,
    user_id: str,
    body: MembershipUpdate,
    allow_ended: bool,
) -> QuantityResponse:
    ops = CampaignOperations(session)
    delta = 0
    renewal = None

    if body.contact_info is not None:
        await ops.update_contact(group_id, user_id, body.contact_info)

    if body.quantity is not None:
        change = await ops.edit_participant_quantity(
            group_id, user_id, body.quantity, allow_ended=allow_ended
        )
        delta = change.delta
        renewal = change.renewal
    else:
        # Still reject unknown participants when only contact fields were sent
        await ops.get_participant(group_id, user_id)

    campaign = await ops.get_campaign(group_id)
    participant = next(
        p for p in await ops.list_participants(group_id) if p.user_id == user_id
    )
    return QuantityResponse(
        campaign=CampaignResponse.from_campaign(campaign),
        participant=ParticipantResponse.from_participant(participant),
        delta=delta,
        renewal=RenewResponse.from_result(renewal) if renewal else None,
    )
