"""Pydantic request and response models for the shopfront API.

Bodies use camelCase on the wire. Response models are built from ORM rows
and operation results through their ``from_*`` constructors only.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from shopfront.shared.timezone import ensure_utc
from shopfront.web.crud import (
    DrawOutcome,
    DrawSweepSummary,
    LotteryDetail,
    RenewResult,
    SettlementResult,
)
from shopfront.web.models import (
    Campaign,
    CampaignParticipant,
    Lottery,
    LotteryEntry,
    PointLog,
)


class ErrorDetail(BaseModel):
    """Single validation problem."""

    code: str
    message: str
    field: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error body returned by every exception handler."""

    detail: str
    type: str
    timestamp: datetime
    request_id: Optional[str] = None
    context: Optional[Dict[str, Any]] = None


class ValidationErrorResponse(ErrorResponse):
    errors: List[ErrorDetail] = []


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SuccessResponse(CamelModel):
    success: bool = True
    message: Optional[str] = None


# Campaigns

class CampaignCreate(CamelModel):
    title: str = Field(..., min_length=1, max_length=200)
    price: Decimal = Field(..., ge=0)
    target_count: int = Field(..., ge=1)
    description: str = ""
    features: List[str] = []
    auto_renew: bool = False
    is_hot: bool = False
    image_url: Optional[str] = Field(None, max_length=500)


class CampaignUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    price: Optional[Decimal] = Field(None, ge=0)
    target_count: Optional[int] = Field(None, ge=1)
    description: Optional[str] = None
    features: Optional[List[str]] = None
    auto_renew: Optional[bool] = None
    is_hot: Optional[bool] = None
    image_url: Optional[str] = Field(None, max_length=500)
    status: Optional[Literal["open", "ended"]] = None


class CampaignResponse(CamelModel):
    id: UUID
    title: str
    description: str
    features: List[str]
    price: float
    target_count: int
    current_count: int
    available: int
    status: str
    auto_renew: bool
    is_hot: bool
    image_url: Optional[str]
    parent_campaign_id: Optional[UUID]
    created_at: datetime

    @classmethod
    def from_campaign(cls, campaign: Campaign) -> "CampaignResponse":
        return cls(
            id=campaign.id,
            title=campaign.title,
            description=campaign.description,
            features=list(campaign.features or []),
            price=float(campaign.price),
            target_count=campaign.target_count,
            current_count=campaign.current_count,
            available=campaign.available,
            status=campaign.effective_status,
            auto_renew=campaign.auto_renew,
            is_hot=campaign.is_hot,
            image_url=campaign.image_url,
            parent_campaign_id=campaign.parent_campaign_id,
            created_at=ensure_utc(campaign.created_at),
        )


class ParticipantResponse(CamelModel):
    user_id: str
    name: Optional[str]
    email: Optional[str]
    quantity: int
    contact_info: Optional[str]
    contacted: bool
    joined_at: datetime

    @classmethod
    def from_participant(cls, participant: CampaignParticipant) -> "ParticipantResponse":
        user = participant.user
        return cls(
            user_id=participant.user_id,
            name=user.name if user else None,
            email=user.email if user else None,
            quantity=participant.units,
            contact_info=participant.contact_info,
            contacted=participant.contacted,
            joined_at=ensure_utc(participant.joined_at),
        )


class JoinRequest(CamelModel):
    quantity: int = Field(1, ge=1)
    contact_info: Optional[str] = Field(None, max_length=255)


class MembershipUpdate(CamelModel):
    quantity: Optional[int] = Field(None, ge=1)
    contact_info: Optional[str] = Field(None, min_length=1, max_length=255)


class ParticipantUpdate(MembershipUpdate):
    contacted: Optional[bool] = None


class MoveMemberRequest(CamelModel):
    group_id: UUID
    user_id: str = Field(..., min_length=1)
    target_group_id: UUID


class RenewRequest(CamelModel):
    group_id: UUID


class RenewResponse(CamelModel):
    renewed: bool
    reason: Optional[str] = None
    message: str
    campaign: Optional[CampaignResponse] = None
    sibling_id: Optional[UUID] = None
    sibling_title: Optional[str] = None

    @classmethod
    def from_result(cls, result: RenewResult) -> "RenewResponse":
        return cls(
            renewed=result.renewed,
            reason=result.reason,
            message=result.message,
            campaign=CampaignResponse.from_campaign(result.campaign) if result.campaign else None,
            sibling_id=result.sibling_id,
            sibling_title=result.sibling_title,
        )


class JoinResponse(CamelModel):
    campaign: CampaignResponse
    quantity: int
    redirected: bool
    redirected_from: Optional[UUID] = None
    renewal: Optional[RenewResponse] = None


class QuantityResponse(CamelModel):
    campaign: CampaignResponse
    participant: ParticipantResponse
    delta: int
    renewal: Optional[RenewResponse] = None


class LeaveResponse(CamelModel):
    campaign: CampaignResponse
    released: int
    backfilled_quantity: int
    backfilled_users: List[str]


class PayoutResponse(CamelModel):
    user_id: str
    quantity: int
    points: int
    status: str
    error: Optional[str] = None


class SettlementResponse(CamelModel):
    already_ended: bool
    paid_count: int
    failed_count: int
    total_points: int
    payouts: List[PayoutResponse]
    renewal: Optional[RenewResponse] = None

    @classmethod
    def from_result(cls, result: SettlementResult) -> "SettlementResponse":
        return cls(
            already_ended=result.already_ended,
            paid_count=len(result.paid),
            failed_count=len(result.failed),
            total_points=result.total_points,
            payouts=[
                PayoutResponse(
                    user_id=p.user_id,
                    quantity=p.quantity,
                    points=p.points,
                    status=p.status,
                    error=p.error,
                )
                for p in result.payouts
            ],
            renewal=RenewResponse.from_result(result.renewal) if result.renewal else None,
        )


class CampaignUpdateResponse(CamelModel):
    campaign: CampaignResponse
    settlement: Optional[SettlementResponse] = None


# Lotteries

class LotteryCreate(CamelModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    draw_date: datetime
    winners_count: int = Field(1, ge=1)
    entry_cost: int = Field(0, ge=0)
    min_participants: Optional[int] = Field(None, ge=1)
    prizes: List[Any] = []


class LotteryUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    draw_date: Optional[datetime] = None
    winners_count: Optional[int] = Field(None, ge=1)
    entry_cost: Optional[int] = Field(None, ge=0)
    min_participants: Optional[int] = Field(None, ge=1)
    prizes: Optional[List[Any]] = None


class LotteryResponse(CamelModel):
    id: UUID
    title: str
    description: str
    draw_date: datetime
    winners_count: int
    entry_cost: int
    min_participants: int
    status: str
    participants: int
    prizes: List[Any]

    @classmethod
    def from_lottery(cls, lottery: Lottery, participants: Optional[int] = None) -> "LotteryResponse":
        return cls(
            id=lottery.id,
            title=lottery.title,
            description=lottery.description,
            draw_date=ensure_utc(lottery.draw_date),
            winners_count=lottery.winners_count,
            entry_cost=lottery.entry_cost,
            min_participants=lottery.required_participants,
            status=lottery.status,
            participants=lottery.participants if participants is None else participants,
            prizes=list(lottery.prizes or []),
        )


class WinnerResponse(CamelModel):
    name: str
    is_winner: bool = True


class LotteryDetailResponse(LotteryResponse):
    has_entered: bool
    winners: List[WinnerResponse]

    @classmethod
    def from_detail(cls, detail: LotteryDetail) -> "LotteryDetailResponse":
        base = LotteryResponse.from_lottery(detail.lottery, participants=detail.entry_count)
        return cls(
            **base.model_dump(),
            has_entered=detail.has_entered,
            winners=[WinnerResponse(name=name) for name in detail.winners],
        )


class EnterResponse(CamelModel):
    success: bool = True
    points_spent: int
    new_points: int


class EntryContactUpdate(CamelModel):
    contact_info: str = Field(..., min_length=1, max_length=255)


class LotteryEntryResponse(CamelModel):
    user_id: str
    name: Optional[str]
    email: Optional[str]
    entry_cost: int
    is_winner: bool
    contact_info: Optional[str]
    entered_at: datetime

    @classmethod
    def from_entry(cls, entry: LotteryEntry) -> "LotteryEntryResponse":
        user = entry.user
        return cls(
            user_id=entry.user_id,
            name=user.name if user else None,
            email=user.email if user else None,
            entry_cost=entry.entry_cost,
            is_winner=entry.is_winner,
            contact_info=entry.contact_info,
            entered_at=ensure_utc(entry.entered_at),
        )


class DrawRequest(CamelModel):
    lottery_id: UUID


class DrawResponse(CamelModel):
    lottery_id: UUID
    status: str
    entry_count: int
    winners_to_pick: int
    winners_marked: int
    winners: List[str] = []
    new_draw_date: Optional[datetime] = None
    reason: Optional[str] = None
    consistency_fault: bool = False

    @classmethod
    def from_outcome(cls, outcome: DrawOutcome) -> "DrawResponse":
        return cls(
            lottery_id=outcome.lottery_id,
            status=outcome.status,
            entry_count=outcome.entry_count,
            winners_to_pick=outcome.winners_to_pick,
            winners_marked=outcome.winners_marked,
            winners=list(outcome.winners),
            new_draw_date=outcome.new_draw_date,
            reason=outcome.reason,
            consistency_fault=outcome.consistency_fault,
        )


class DrawSweepResponse(CamelModel):
    drawn: int
    extended: int
    skipped: int
    errors: int
    faults: int
    total: int
    results: List[DrawResponse]
    failures: List[Dict[str, str]]

    @classmethod
    def from_summary(cls, summary: DrawSweepSummary) -> "DrawSweepResponse":
        return cls(
            drawn=summary.drawn,
            extended=summary.extended,
            skipped=summary.skipped,
            errors=summary.errors,
            faults=summary.faults,
            total=summary.total,
            results=[DrawResponse.from_outcome(o) for o in summary.results],
            failures=list(summary.failures),
        )


# Points

class PointLogResponse(CamelModel):
    id: UUID
    amount: int
    delta: int
    reason: str
    type: str
    created_at: datetime

    @classmethod
    def from_log(cls, log: PointLog) -> "PointLogResponse":
        return cls(
            id=log.id,
            amount=log.amount,
            delta=log.delta,
            reason=log.reason,
            type=log.kind,
            created_at=ensure_utc(log.created_at),
        )


class PointsResponse(CamelModel):
    points: int
    logs: List[PointLogResponse]


class CheckInStatusResponse(CamelModel):
    points: int
    streak: int
    last_check_in: Optional[datetime]
    can_check_in: bool


class CheckInResponse(CamelModel):
    success: bool = True
    points_earned: int
    streak: int
    points: int
    checked_in_at: datetime


# Current user history

class MyCampaignResponse(CamelModel):
    campaign: CampaignResponse
    quantity: int
    contact_info: Optional[str]
    contacted: bool
    joined_at: datetime


class MyLotteryEntryResponse(CamelModel):
    lottery: LotteryResponse
    entry_cost: int
    is_winner: bool
    contact_info: Optional[str]
    entered_at: datetime
