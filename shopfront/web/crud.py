"""Database operations for the shopfront service.

This module holds the business operations behind the API: the points
ledger, the group-buy campaign lifecycle (join, leave, move, settle),
series auto-renewal and the lottery draw engine. All operations are async,
use SQLAlchemy 2.0 syntax and run inside the caller's session; the caller
owns the surrounding transaction.

Shared counters (campaign enrolment, points balances, lottery status) are
only ever changed through single conditional UPDATE statements so that
concurrent requests cannot overshoot capacity, lose balance updates or draw
a lottery twice.
"""

from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal, ROUND_FLOOR
from typing import Optional, List, Dict, Any, Sequence, Iterable, TypeVar
from uuid import UUID

from sqlalchemy import select, update, delete, func, desc, or_, case
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.exc import IntegrityError

from shopfront.shared.config import get_settings
from shopfront.shared.timezone import ensure_utc, utcnow
from shopfront.web.models import (
    Campaign,
    CampaignParticipant,
    CampaignStatus,
    Lottery,
    LotteryEntry,
    LotteryStatus,
    PointKind,
    PointLog,
    UserAccount,
    UserRole,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DatabaseOperationError(Exception):
    """Base exception for database operations."""
    pass


class NotFoundError(DatabaseOperationError):
    """Raised when a requested resource is not found."""
    pass


class ConflictError(DatabaseOperationError):
    """Raised when an operation conflicts with the current state."""
    pass


class CapacityExceededError(ConflictError):
    """Raised when a campaign has no room for the requested quantity."""

    def __init__(self, needed: int, available: int, message: Optional[str] = None):
        self.needed = needed
        self.available = available
        super().__init__(
            message or f"Not enough space (available: {available}, needed: {needed})"
        )


class InsufficientPointsError(ConflictError):
    """Raised when a spend exceeds the user's balance."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient points: need {required}, have {available}")


class ValidationError(DatabaseOperationError):
    """Raised when input is rejected by a business rule."""
    pass


class ConsistencyError(DatabaseOperationError):
    """Raised when the store silently rejected writes it should have applied."""
    pass


# Series titles: "<base> #<n>"
SERIES_SUFFIX_RE = re.compile(r"\s*#\s*(\d+)\s*$")
_CJK_RE = re.compile(r"[\u4e00-\u9fa5]")


def base_title(title: str) -> str:
    """Strip a trailing ``#<n>`` series suffix from a campaign title."""
    return SERIES_SUFFIX_RE.sub("", title).strip()


def series_number(title: str) -> int:
    """Batch number encoded in a title; untagged titles count as batch 1."""
    match = SERIES_SUFFIX_RE.search(title)
    return int(match.group(1)) if match else 1


def next_series_title(base: str, titles: Iterable[str]) -> str:
    """Title for the next batch of a series.

    Only titles whose own base title equals ``base`` are counted. The new
    number is one past the highest existing one, so ``X``, ``X #2`` and
    ``X #5`` yield ``X #6``; a lone ``X`` yields ``X #2``.
    """
    highest = max(
        (series_number(title) for title in titles if base_title(title) == base),
        default=1,
    )
    return f"{base} #{highest + 1}"


def fisher_yates_shuffle(items: Sequence[T], rng: Optional[random.Random] = None) -> List[T]:
    """Return a uniformly shuffled copy of ``items``.

    Walks from the last index down to 1, swapping each position with a
    uniformly chosen index in ``[0, i]``.
    """
    rng = rng or random.SystemRandom()
    shuffled = list(items)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def mask_name(name: Optional[str]) -> str:
    """Mask a display name for public winner lists.

    Chinese names keep their first character, other names their first two
    (or one, when the name is two characters or shorter).
    """
    if not name:
        return "***"
    if _CJK_RE.search(name):
        return name[0] + "*" * max(1, len(name) - 1)
    if len(name) <= 2:
        return name[0] + "*"
    return name[:2] + "*" * max(1, len(name) - 2)


def check_in_reward(streak: int) -> int:
    """Points for a check-in on the given streak day."""
    if streak >= 30:
        return 30
    if streak >= 8:
        return 20
    return 10


def settlement_points(quantity: int, price: Any) -> int:
    """Settlement payout: ``floor(quantity * price)``."""
    amount = Decimal(quantity) * Decimal(str(price))
    return int(amount.to_integral_value(rounding=ROUND_FLOOR))


def _not_ended(column):
    return or_(column.is_(None), column != CampaignStatus.ENDED)


# Result types

@dataclass
class CheckInResult:
    points_earned: int
    streak: int
    balance: int
    checked_in_at: datetime


@dataclass
class CheckInStatus:
    points: int
    streak: int
    last_check_in: Optional[datetime]
    can_check_in: bool


class RenewReason:
    NOT_FOUND = "not_found"
    NOT_FULL = "not_full"
    AUTO_RENEW_DISABLED = "auto_renew_disabled"
    SIBLING_OPEN = "sibling_open"
    SUCCESSOR_EXISTS = "successor_exists"
    ERROR = "error"

    MESSAGES = {
        NOT_FOUND: "Campaign not found",
        NOT_FULL: "Campaign is not full yet",
        AUTO_RENEW_DISABLED: "Auto-renew is disabled for this campaign",
        SIBLING_OPEN: "An unfilled campaign of this series is still open",
        SUCCESSOR_EXISTS: "Successor already exists",
        ERROR: "Renewal failed",
    }


@dataclass
class RenewResult:
    """Outcome of a renewal attempt: the new campaign or a block reason."""

    campaign: Optional[Campaign] = None
    reason: Optional[str] = None
    sibling_id: Optional[UUID] = None
    sibling_title: Optional[str] = None

    @property
    def renewed(self) -> bool:
        return self.campaign is not None

    @property
    def message(self) -> str:
        if self.renewed:
            return f"Created {self.campaign.title}"
        text = RenewReason.MESSAGES.get(self.reason, self.reason or "")
        if self.sibling_title:
            text = f"{text}: {self.sibling_title}"
        return text


@dataclass
class JoinResult:
    participant: CampaignParticipant
    campaign: Campaign
    redirected_from: Optional[UUID] = None
    renewal: Optional[RenewResult] = None


@dataclass
class QuantityChange:
    participant: CampaignParticipant
    campaign: Campaign
    delta: int
    renewal: Optional[RenewResult] = None


@dataclass
class LeaveResult:
    campaign: Campaign
    released: int
    backfilled_users: List[str] = field(default_factory=list)
    backfilled_quantity: int = 0
    source_campaign_id: Optional[UUID] = None


class PayoutStatus:
    PAID = "paid"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class PayoutOutcome:
    user_id: str
    quantity: int
    points: int
    status: str
    error: Optional[str] = None


@dataclass
class SettlementResult:
    """Per-participant payout outcomes of a settlement.

    ``already_ended`` is set when the campaign had been settled before and
    nothing was paid.
    """

    campaign: Campaign
    already_ended: bool = False
    payouts: List[PayoutOutcome] = field(default_factory=list)
    renewal: Optional[RenewResult] = None

    @property
    def paid(self) -> List[PayoutOutcome]:
        return [p for p in self.payouts if p.status == PayoutStatus.PAID]

    @property
    def failed(self) -> List[PayoutOutcome]:
        return [p for p in self.payouts if p.status == PayoutStatus.FAILED]

    @property
    def total_points(self) -> int:
        return sum(p.points for p in self.paid)


@dataclass
class EntryResult:
    entry: LotteryEntry
    points_spent: int
    balance: int


@dataclass
class LotteryDetail:
    lottery: Lottery
    entry_count: int
    has_entered: bool
    winners: List[str] = field(default_factory=list)


class DrawStatus:
    DRAWN = "drawn"
    EXTENDED = "extended"
    SKIPPED = "skipped"


@dataclass
class DrawOutcome:
    """Outcome of one draw attempt."""

    lottery_id: UUID
    status: str
    entry_count: int = 0
    winners_to_pick: int = 0
    winners_marked: int = 0
    winners: List[str] = field(default_factory=list)
    new_draw_date: Optional[datetime] = None
    reason: Optional[str] = None

    @property
    def consistency_fault(self) -> bool:
        """Winners were due but the store accepted none of the marks."""
        return self.status == DrawStatus.DRAWN and self.winners_to_pick > 0 and self.winners_marked == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lotteryId": str(self.lottery_id),
            "status": self.status,
            "entryCount": self.entry_count,
            "winnersToPick": self.winners_to_pick,
            "winnersMarked": self.winners_marked,
            "newDrawDate": self.new_draw_date.isoformat() if self.new_draw_date else None,
            "reason": self.reason,
            "consistencyFault": self.consistency_fault,
        }


@dataclass
class DrawSweepSummary:
    drawn: int = 0
    extended: int = 0
    skipped: int = 0
    errors: int = 0
    faults: int = 0
    results: List[DrawOutcome] = field(default_factory=list)
    failures: List[Dict[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.drawn + self.extended + self.skipped + self.errors

    def record(self, outcome: DrawOutcome) -> None:
        self.results.append(outcome)
        if outcome.status == DrawStatus.DRAWN:
            self.drawn += 1
            if outcome.consistency_fault:
                self.faults += 1
        elif outcome.status == DrawStatus.EXTENDED:
            self.extended += 1
        else:
            self.skipped += 1


class PointsOperations:
    """Points ledger: balances, the append-only point log and check-ins.

    Every balance change writes its log row first and then moves the cached
    balance with one atomic UPDATE inside the same savepoint, so the balance
    always equals the sum of the user's log deltas.
    """

    def __init__(self, session: AsyncSession):
        """Initialize with database session.

        Args:
            session: SQLAlchemy async session
        """
        self.session = session

    async def get_account(self, user_id: str) -> UserAccount:
        """Get an account by ID, reloading it from the database.

        Raises:
            NotFoundError: If the account doesn't exist
            DatabaseOperationError: If query fails
        """
        try:
            stmt = (
                select(UserAccount)
                .where(UserAccount.id == user_id)
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(stmt)
            account = result.scalar_one_or_none()

            if account is None:
                raise NotFoundError(f"User not found: {user_id}")

            return account

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get account: {e}") from e

    async def get_or_create_account(
        self,
        user_id: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        role: Optional[str] = None,
    ) -> UserAccount:
        """Get an account, creating it with the welcome bonus if missing.

        Args:
            user_id: External user identifier
            name: Display name used when creating the account
            email: Email used when creating the account
            role: Role used when creating the account

        Returns:
            UserAccount: Existing or newly created account

        Raises:
            DatabaseOperationError: If database operation fails
        """
        try:
            try:
                return await self.get_account(user_id)
            except NotFoundError:
                pass

            account = UserAccount(
                id=user_id,
                name=name or (email.split("@")[0] if email else None),
                email=email,
                role=role or UserRole.USER,
            )
            try:
                async with self.session.begin_nested():
                    self.session.add(account)
                    await self.session.flush()
            except IntegrityError:
                # Created concurrently by another request
                return await self.get_account(user_id)

            bonus = get_settings().welcome_bonus_points
            if bonus > 0:
                await self.apply_delta(user_id, bonus, "welcome bonus", PointKind.EARN)

            logger.info(f"Created account {user_id} with {bonus} welcome points")
            return await self.get_account(user_id)

        except Exception as e:
            raise DatabaseOperationError(f"Failed to get or create account: {e}") from e

    async def apply_delta(
        self,
        user_id: str,
        amount: int,
        reason: str,
        kind: str,
        ensure_sufficient: bool = False,
    ) -> int:
        """Apply a point change and append its log entry.

        Args:
            user_id: Account to change
            amount: Non-negative number of points
            reason: Reason shown in the point history
            kind: ``earn`` or ``spend``
            ensure_sufficient: For spends, refuse to go below zero

        Returns:
            int: New balance

        Raises:
            ValidationError: If amount or kind is invalid
            NotFoundError: If the account doesn't exist
            InsufficientPointsError: If ``ensure_sufficient`` and the balance is too low
            DatabaseOperationError: If operation fails
        """
        if kind not in PointKind.ALL:
            raise ValidationError(f"Unknown point kind: {kind}")
        if amount < 0:
            raise ValidationError(f"Point amount must be non-negative: {amount}")

        delta = amount if kind == PointKind.EARN else -amount

        try:
            async with self.session.begin_nested():
                self.session.add(PointLog(user_id=user_id, delta=delta, kind=kind, reason=reason))
                await self.session.flush()

                stmt = (
                    update(UserAccount)
                    .where(UserAccount.id == user_id)
                    .values(points=UserAccount.points + delta)
                    .execution_options(synchronize_session=False)
                )
                if kind == PointKind.SPEND and ensure_sufficient:
                    stmt = stmt.where(UserAccount.points >= amount)

                result = await self.session.execute(stmt)
                if result.rowcount == 0:
                    available = await self._current_points(user_id)
                    if available is None:
                        raise NotFoundError(f"User not found: {user_id}")
                    raise InsufficientPointsError(required=amount, available=available)

            account = await self.get_account(user_id)
            logger.info(
                f"Points {kind} {amount} for {user_id} ({reason}), balance {account.points}"
            )
            return account.points

        except (NotFoundError, ConflictError):
            raise
        except IntegrityError as e:
            raise NotFoundError(f"User not found: {user_id}") from e
        except Exception as e:
            raise DatabaseOperationError(f"Failed to apply point delta: {e}") from e

    async def _current_points(self, user_id: str) -> Optional[int]:
        result = await self.session.execute(
            select(UserAccount.points).where(UserAccount.id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_history(
        self,
        user_id: str,
        limit: Optional[int] = None
    ) -> List[PointLog]:
        """Get a user's point log, newest first.

        Raises:
            DatabaseOperationError: If query fails
        """
        try:
            stmt = (
                select(PointLog)
                .where(PointLog.user_id == user_id)
                .order_by(desc(PointLog.created_at))
            )
            if limit:
                stmt = stmt.limit(limit)

            result = await self.session.execute(stmt)
            return list(result.scalars().all())

        except Exception as e:
            raise DatabaseOperationError(f"Failed to get point history: {e}") from e

    async def check_in_status(
        self,
        user_id: str,
        now: Optional[datetime] = None
    ) -> CheckInStatus:
        """Report balance, streak and whether the user may check in today."""
        now = ensure_utc(now) or utcnow()
        account = await self.get_account(user_id)
        last = ensure_utc(account.last_check_in)

        return CheckInStatus(
            points=account.points,
            streak=account.check_in_streak,
            last_check_in=last,
            can_check_in=last is None or last.date() != now.date(),
        )

    async def check_in(
        self,
        user_id: str,
        now: Optional[datetime] = None
    ) -> CheckInResult:
        """Record today's check-in and pay the streak reward.

        A check-in on the day after the previous one continues the streak;
        any gap resets it to 1. Days are UTC calendar days.

        Args:
            user_id: Account checking in
            now: Current time (defaults to now)

        Returns:
            CheckInResult: Reward, new streak and balance

        Raises:
            NotFoundError: If the account doesn't exist
            ConflictError: If the user already checked in today
            DatabaseOperationError: If operation fails
        """
        now = ensure_utc(now) or utcnow()
        today = now.date()

        try:
            account = await self.get_account(user_id)
            last = ensure_utc(account.last_check_in)

            if last is not None and last.date() == today:
                raise ConflictError("Already checked in today")

            if last is not None and last.date() == today - timedelta(days=1):
                streak = account.check_in_streak + 1
            else:
                streak = 1

            day_start = datetime.combine(today, time.min, tzinfo=timezone.utc)
            result = await self.session.execute(
                update(UserAccount)
                .where(
                    UserAccount.id == user_id,
                    or_(
                        UserAccount.last_check_in.is_(None),
                        UserAccount.last_check_in < day_start,
                    ),
                )
                .values(last_check_in=now, check_in_streak=streak)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ConflictError("Already checked in today")

            reward = check_in_reward(streak)
            balance = await self.apply_delta(
                user_id, reward, f"daily check-in (day {streak})", PointKind.EARN
            )

            return CheckInResult(
                points_earned=reward,
                streak=streak,
                balance=balance,
                checked_in_at=now,
            )

        except (NotFoundError, ConflictError):
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to check in: {e}") from e


class CampaignOperations:
    """Database operations for group-buy campaigns.

    Handles campaign administration, participant joins, leaves, moves and
    quantity edits, and settlement payouts. Enrolment changes go through
    ``_reserve``/``_release`` which keep ``current_count`` within
    ``target_count`` atomically.
    """

    EDITABLE_FIELDS = (
        "title",
        "description",
        "price",
        "target_count",
        "features",
        "auto_renew",
        "is_hot",
        "image_url",
    )

    def __init__(self, session: AsyncSession):
        """Initialize with database session.

        Args:
            session: SQLAlchemy async session
        """
        self.session = session
        self.points = PointsOperations(session)

    # Queries

    async def get_campaign(self, campaign_id: UUID) -> Campaign:
        """Get campaign by ID, reloading it from the database.

        Raises:
            NotFoundError: If campaign doesn't exist
            DatabaseOperationError: If query fails
        """
        try:
            stmt = (
                select(Campaign)
                .where(Campaign.id == campaign_id)
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(stmt)
            campaign = result.scalar_one_or_none()

            if campaign is None:
                raise NotFoundError(f"Campaign not found: {campaign_id}")

            return campaign

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get campaign: {e}") from e

    async def list_campaigns(self, limit: Optional[int] = None) -> List[Campaign]:
        """List campaigns, newest first."""
        try:
            stmt = select(Campaign).order_by(desc(Campaign.created_at))
            if limit:
                stmt = stmt.limit(limit)

            result = await self.session.execute(stmt)
            return list(result.scalars().all())

        except Exception as e:
            raise DatabaseOperationError(f"Failed to list campaigns: {e}") from e

    async def list_participants(self, campaign_id: UUID) -> List[CampaignParticipant]:
        """List a campaign's participants in join order, with their accounts."""
        try:
            stmt = (
                select(CampaignParticipant)
                .options(selectinload(CampaignParticipant.user))
                .where(CampaignParticipant.campaign_id == campaign_id)
                .order_by(CampaignParticipant.joined_at, CampaignParticipant.id)
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(stmt)
            return list(result.scalars().all())

        except Exception as e:
            raise DatabaseOperationError(f"Failed to list participants: {e}") from e

    async def list_user_campaigns(self, user_id: str) -> List[CampaignParticipant]:
        """List a user's memberships with their campaigns, newest first."""
        try:
            stmt = (
                select(CampaignParticipant)
                .options(selectinload(CampaignParticipant.campaign))
                .where(CampaignParticipant.user_id == user_id)
                .order_by(desc(CampaignParticipant.joined_at))
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(stmt)
            return list(result.scalars().all())

        except Exception as e:
            raise DatabaseOperationError(f"Failed to list user campaigns: {e}") from e

    async def get_participant(self, campaign_id: UUID, user_id: str) -> CampaignParticipant:
        """Get a participant row.

        Raises:
            NotFoundError: If the user is not in the campaign
        """
        participant = await self._find_participant(campaign_id, user_id)
        if participant is None:
            raise NotFoundError(f"Participant {user_id} not found in campaign {campaign_id}")
        return participant

    async def _find_participant(
        self,
        campaign_id: UUID,
        user_id: str
    ) -> Optional[CampaignParticipant]:
        try:
            stmt = (
                select(CampaignParticipant)
                .where(
                    CampaignParticipant.campaign_id == campaign_id,
                    CampaignParticipant.user_id == user_id,
                )
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()

        except Exception as e:
            raise DatabaseOperationError(f"Failed to get participant: {e}") from e

    # Administration

    async def create_campaign(
        self,
        title: str,
        price: Decimal,
        target_count: int,
        description: str = "",
        features: Optional[List[str]] = None,
        auto_renew: bool = False,
        is_hot: bool = False,
        image_url: Optional[str] = None,
        parent_campaign_id: Optional[UUID] = None,
    ) -> Campaign:
        """Create a new campaign.

        Raises:
            ValidationError: If target or price is invalid
            ConflictError: If the title is already taken
            DatabaseOperationError: For database errors
        """
        if target_count < 1:
            raise ValidationError("Target count must be at least 1")
        if Decimal(str(price)) < 0:
            raise ValidationError("Price must be non-negative")

        try:
            campaign = Campaign(
                title=title.strip(),
                price=price,
                target_count=target_count,
                description=description or "",
                features=list(features or []),
                auto_renew=auto_renew,
                is_hot=is_hot,
                image_url=image_url,
                parent_campaign_id=parent_campaign_id,
            )
            async with self.session.begin_nested():
                self.session.add(campaign)
                await self.session.flush()

            logger.info(f"Created campaign {campaign.title} ({campaign.id})")
            return campaign

        except IntegrityError as e:
            raise ConflictError(f"Campaign title already exists: {title}") from e
        except Exception as e:
            raise DatabaseOperationError(f"Failed to create campaign: {e}") from e

    async def update_campaign(
        self,
        campaign_id: UUID,
        updates: Dict[str, Any]
    ) -> tuple[Campaign, Optional[SettlementResult]]:
        """Update campaign fields; a status of ``ended`` settles the campaign.

        Args:
            campaign_id: Campaign UUID
            updates: Field values keyed by attribute name

        Returns:
            tuple[Campaign, Optional[SettlementResult]]: Updated campaign and
            the settlement result when the update ended it

        Raises:
            NotFoundError: If campaign doesn't exist
            ValidationError: If the new target is below current enrolment
            ConflictError: If the title is taken or an ended campaign would be reopened
            DatabaseOperationError: If update fails
        """
        try:
            campaign = await self.get_campaign(campaign_id)
            status = updates.get("status", CampaignStatus.ENDED if campaign.is_ended else None)

            if campaign.is_ended and status != CampaignStatus.ENDED:
                raise ConflictError("An ended campaign cannot be reopened")

            if "target_count" in updates and updates["target_count"] is not None:
                await self._set_target(campaign, int(updates["target_count"]))

            values = {
                key: value
                for key, value in updates.items()
                if key in self.EDITABLE_FIELDS and key != "target_count" and value is not None
            }
            if "title" in values:
                values["title"] = values["title"].strip()
            if "price" in values and Decimal(str(values["price"])) < 0:
                raise ValidationError("Price must be non-negative")

            if values:
                try:
                    async with self.session.begin_nested():
                        for key, value in values.items():
                            setattr(campaign, key, value)
                        campaign.updated_at = utcnow()
                        await self.session.flush()
                except IntegrityError as e:
                    raise ConflictError(f"Campaign title already exists: {values.get('title')}") from e

            settlement = None
            if status == CampaignStatus.ENDED and not campaign.is_ended:
                settlement = await self.settle(campaign_id)

            campaign = await self.get_campaign(campaign_id)
            return campaign, settlement

        except (NotFoundError, ConflictError, ValidationError):
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to update campaign: {e}") from e

    async def _set_target(self, campaign: Campaign, target_count: int) -> None:
        if target_count < 1:
            raise ValidationError("Target count must be at least 1")

        result = await self.session.execute(
            update(Campaign)
            .where(Campaign.id == campaign.id, Campaign.current_count <= target_count)
            .values(target_count=target_count, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(campaign)

        if result.rowcount == 0:
            raise ValidationError(
                f"Target count {target_count} is below current enrolment {campaign.current_count}"
            )

    async def delete_campaign(self, campaign_id: UUID) -> None:
        """Delete a campaign and its participants.

        Raises:
            NotFoundError: If campaign doesn't exist
            DatabaseOperationError: If deletion fails
        """
        try:
            await self.get_campaign(campaign_id)

            await self.session.execute(
                update(Campaign)
                .where(Campaign.parent_campaign_id == campaign_id)
                .values(parent_campaign_id=None)
                .execution_options(synchronize_session=False)
            )
            await self.session.execute(
                delete(CampaignParticipant).where(CampaignParticipant.campaign_id == campaign_id)
            )
            await self.session.execute(delete(Campaign).where(Campaign.id == campaign_id))

            logger.info(f"Deleted campaign {campaign_id}")

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to delete campaign: {e}") from e

    # Enrolment

    async def _reserve(self, campaign: Campaign, quantity: int) -> None:
        """Atomically add ``quantity`` to a non-ended campaign's enrolment.

        Raises:
            ConflictError: If the campaign has ended
            CapacityExceededError: If the campaign lacks room
        """
        result = await self.session.execute(
            update(Campaign)
            .where(
                Campaign.id == campaign.id,
                _not_ended(Campaign.status),
                Campaign.current_count + quantity <= Campaign.target_count,
            )
            .values(current_count=Campaign.current_count + quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(campaign)

        if result.rowcount == 0:
            if campaign.is_ended:
                raise ConflictError(f"Campaign {campaign.title} has ended")
            raise CapacityExceededError(needed=quantity, available=campaign.available)

    async def _release(self, campaign: Campaign, quantity: int) -> None:
        """Atomically remove ``quantity`` from a campaign's enrolment."""
        await self.session.execute(
            update(Campaign)
            .where(Campaign.id == campaign.id)
            .values(
                current_count=case(
                    (Campaign.current_count >= quantity, Campaign.current_count - quantity),
                    else_=0,
                ),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(campaign)

    async def _earliest_open_sibling(
        self,
        campaign: Campaign,
        quantity: int
    ) -> Optional[Campaign]:
        """Earliest older non-ended campaign of the same series with room for ``quantity``."""
        base = base_title(campaign.title)
        stmt = (
            select(Campaign)
            .where(
                Campaign.title.startswith(base, autoescape=True),
                Campaign.created_at < campaign.created_at,
                Campaign.id != campaign.id,
                _not_ended(Campaign.status),
            )
            .order_by(Campaign.created_at)
        )
        result = await self.session.execute(stmt)
        for sibling in result.scalars().all():
            if base_title(sibling.title) == base and sibling.available >= quantity:
                return sibling
        return None

    async def _renew_if_filled(self, campaign: Campaign) -> Optional[RenewResult]:
        if not campaign.auto_renew or campaign.current_count < campaign.target_count:
            return None

        try:
            return await AutoRenewOperations(self.session).try_renew(campaign.id)
        except DatabaseOperationError as e:
            logger.error(f"Auto-renew after fill failed for {campaign.id}: {e}")
            return RenewResult(reason=RenewReason.ERROR)

    async def join(
        self,
        campaign_id: UUID,
        user_id: str,
        quantity: int = 1,
        contact_info: Optional[str] = None
    ) -> JoinResult:
        """Join a user to a campaign.

        If an older campaign of the same series still has room for the whole
        quantity, the join goes to the oldest such campaign instead. This also
        applies when the requested campaign has ended. Repeat
        joins merge into the user's existing row.

        Args:
            campaign_id: Campaign UUID
            user_id: Joining user
            quantity: Units to reserve
            contact_info: Optional contact details

        Returns:
            JoinResult: Participant row, the campaign actually joined, and the
            renewal outcome when the join filled an auto-renew campaign

        Raises:
            ValidationError: If quantity is below 1
            NotFoundError: If campaign doesn't exist
            ConflictError: If the campaign has ended and no earlier batch has room
            CapacityExceededError: If the campaign lacks room
            DatabaseOperationError: If operation fails
        """
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")

        try:
            campaign = await self.get_campaign(campaign_id)

            # Earlier open batches take precedence, even over an ended one
            redirected_from = None
            sibling = await self._earliest_open_sibling(campaign, quantity)
            if sibling is not None:
                logger.info(f"Redirecting join from {campaign.title} to earlier batch {sibling.title}")
                redirected_from = campaign.id
                campaign = sibling

            if campaign.is_ended:
                raise ConflictError(f"Campaign {campaign.title} has ended")

            await self._reserve(campaign, quantity)

            participant = await self._find_participant(campaign.id, user_id)
            if participant is not None:
                participant.quantity = participant.units + quantity
                if contact_info:
                    participant.contact_info = contact_info
            else:
                participant = CampaignParticipant(
                    campaign_id=campaign.id,
                    user_id=user_id,
                    quantity=quantity,
                    contact_info=contact_info,
                )
                self.session.add(participant)
            await self.session.flush()

            logger.info(
                f"User {user_id} joined {campaign.title} x{quantity} "
                f"({campaign.current_count}/{campaign.target_count})"
            )

            renewal = await self._renew_if_filled(campaign)
            return JoinResult(
                participant=participant,
                campaign=campaign,
                redirected_from=redirected_from,
                renewal=renewal,
            )

        except (NotFoundError, ConflictError):
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to join campaign: {e}") from e

    async def edit_participant_quantity(
        self,
        campaign_id: UUID,
        user_id: str,
        new_quantity: int,
        allow_ended: bool = False
    ) -> QuantityChange:
        """Change a participant's reserved quantity.

        Args:
            campaign_id: Campaign UUID
            user_id: Participant's user
            new_quantity: New quantity (at least 1)
            allow_ended: Whether ended campaigns may be edited (admin)

        Raises:
            ValidationError: If new quantity is below 1
            NotFoundError: If the campaign or participant doesn't exist
            ConflictError: If the campaign has ended and ``allow_ended`` is false
            CapacityExceededError: If the increase doesn't fit
            DatabaseOperationError: If operation fails
        """
        if new_quantity < 1:
            raise ValidationError("Quantity must be at least 1")

        try:
            campaign = await self.get_campaign(campaign_id)
            if campaign.is_ended and not allow_ended:
                raise ConflictError(f"Campaign {campaign.title} has ended")

            participant = await self.get_participant(campaign_id, user_id)
            delta = new_quantity - participant.units

            if delta > 0:
                if campaign.is_ended:
                    # Ended campaigns don't accept reservations through _reserve
                    if campaign.current_count + delta > campaign.target_count:
                        raise CapacityExceededError(needed=delta, available=campaign.available)
                    await self._adjust_ended(campaign, delta)
                else:
                    await self._reserve(campaign, delta)
            elif delta < 0:
                await self._release(campaign, -delta)

            participant.quantity = new_quantity
            await self.session.flush()

            logger.info(f"Participant {user_id} in {campaign.title} now holds {new_quantity} ({delta:+d})")

            renewal = await self._renew_if_filled(campaign) if delta > 0 and not campaign.is_ended else None
            return QuantityChange(participant=participant, campaign=campaign, delta=delta, renewal=renewal)

        except (NotFoundError, ConflictError, ValidationError):
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to edit participant quantity: {e}") from e

    async def _adjust_ended(self, campaign: Campaign, delta: int) -> None:
        result = await self.session.execute(
            update(Campaign)
            .where(Campaign.id == campaign.id, Campaign.current_count + delta <= Campaign.target_count)
            .values(current_count=Campaign.current_count + delta)
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(campaign)
        if result.rowcount == 0:
            raise CapacityExceededError(needed=delta, available=campaign.available)

    async def update_contact(
        self,
        campaign_id: UUID,
        user_id: str,
        contact_info: str
    ) -> CampaignParticipant:
        """Update a participant's contact details."""
        try:
            participant = await self.get_participant(campaign_id, user_id)
            participant.contact_info = contact_info
            await self.session.flush()
            return participant

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to update contact: {e}") from e

    async def set_contacted(
        self,
        campaign_id: UUID,
        user_id: str,
        contacted: bool
    ) -> CampaignParticipant:
        """Mark whether an admin has contacted a participant."""
        try:
            participant = await self.get_participant(campaign_id, user_id)
            participant.contacted = contacted
            await self.session.flush()
            return participant

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to update contacted flag: {e}") from e

    async def remove_participant(self, campaign_id: UUID, user_id: str) -> int:
        """Remove a participant (admin) and release their quantity.

        Returns:
            int: Quantity released

        Raises:
            NotFoundError: If the campaign or participant doesn't exist
            DatabaseOperationError: If operation fails
        """
        try:
            campaign = await self.get_campaign(campaign_id)
            participant = await self.get_participant(campaign_id, user_id)
            quantity = participant.units

            await self.session.delete(participant)
            await self.session.flush()
            await self._release(campaign, quantity)

            logger.info(f"Removed {user_id} ({quantity}) from {campaign.title}")
            return quantity

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to remove participant: {e}") from e

    async def leave(self, campaign_id: UUID, user_id: str) -> LeaveResult:
        """Withdraw a user from a campaign and backfill from its successor.

        Freed seats are offered to members of the newest non-ended child
        campaign in join order. A member moves only when their whole quantity
        fits; members that don't fit are skipped.

        Raises:
            NotFoundError: If the campaign doesn't exist or the user isn't in it
            ConflictError: If the campaign has ended
            DatabaseOperationError: If operation fails
        """
        try:
            campaign = await self.get_campaign(campaign_id)
            if campaign.is_ended:
                raise ConflictError(f"Campaign {campaign.title} has ended")

            participant = await self.get_participant(campaign_id, user_id)
            quantity = participant.units

            await self.session.delete(participant)
            await self.session.flush()
            await self._release(campaign, quantity)

            result = LeaveResult(campaign=campaign, released=quantity)
            await self._backfill(campaign, result)

            logger.info(
                f"User {user_id} left {campaign.title} (-{quantity}, "
                f"backfilled {result.backfilled_quantity})"
            )
            return result

        except (NotFoundError, ConflictError):
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to leave campaign: {e}") from e

    async def _backfill(self, parent: Campaign, result: LeaveResult) -> None:
        free = parent.target_count - parent.current_count
        if free <= 0:
            return

        stmt = (
            select(Campaign)
            .where(Campaign.parent_campaign_id == parent.id, _not_ended(Campaign.status))
            .order_by(desc(Campaign.created_at))
            .limit(1)
        )
        child = (await self.session.execute(stmt)).scalar_one_or_none()
        if child is None:
            return

        result.source_campaign_id = child.id
        for member in await self.list_participants(child.id):
            if free <= 0:
                break
            quantity = member.units
            if quantity > free:
                continue

            await self._transfer(member, child, parent)
            free -= quantity
            result.backfilled_users.append(member.user_id)
            result.backfilled_quantity += quantity

    async def _transfer(
        self,
        participant: CampaignParticipant,
        source: Campaign,
        target: Campaign
    ) -> CampaignParticipant:
        """Move a participant row between campaigns, merging into an existing row."""
        quantity = participant.units

        await self._reserve(target, quantity)
        await self._release(source, quantity)

        existing = await self._find_participant(target.id, participant.user_id)
        if existing is not None:
            existing.quantity = existing.units + quantity
            if not existing.contact_info and participant.contact_info:
                existing.contact_info = participant.contact_info
            await self.session.delete(participant)
            await self.session.flush()
            return existing

        participant.campaign_id = target.id
        await self.session.flush()
        return participant

    async def move_participant(
        self,
        from_campaign_id: UUID,
        to_campaign_id: UUID,
        user_id: str
    ) -> CampaignParticipant:
        """Move a participant to another campaign (admin).

        The target's enrolment grows by exactly the moved quantity, including
        when the user already holds a row there and the rows are merged.

        Args:
            from_campaign_id: Source campaign UUID
            to_campaign_id: Target campaign UUID
            user_id: Participant to move

        Returns:
            CampaignParticipant: The participant row in the target campaign

        Raises:
            ValidationError: If source and target are the same campaign
            NotFoundError: If either campaign or the participant doesn't exist
            ConflictError: If the target campaign has ended
            CapacityExceededError: If the target lacks room
            DatabaseOperationError: If operation fails
        """
        if from_campaign_id == to_campaign_id:
            raise ValidationError("Target group must be different")

        try:
            target = await self.get_campaign(to_campaign_id)
            if target.is_ended:
                raise ConflictError(f"Target group {target.title} has ended")

            source = await self.get_campaign(from_campaign_id)
            participant = await self.get_participant(from_campaign_id, user_id)
            quantity = participant.units

            if target.current_count + quantity > target.target_count:
                raise CapacityExceededError(
                    needed=quantity,
                    available=target.available,
                    message=(
                        f"Not enough space in target group "
                        f"(Available: {target.available}, Needed: {quantity})"
                    ),
                )

            moved = await self._transfer(participant, source, target)

            logger.info(f"Moved {user_id} x{quantity} from {source.title} to {target.title}")
            return moved

        except (NotFoundError, ConflictError):
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to move participant: {e}") from e

    # Settlement

    async def settle(self, campaign_id: UUID) -> SettlementResult:
        """End a campaign and pay each participant ``floor(quantity * price)`` points.

        The ``ended`` transition is a conditional update, so a campaign pays
        out at most once however often this is called. Payouts are
        best-effort: each runs in its own savepoint, and a failed payout is
        recorded without affecting the others.

        Args:
            campaign_id: Campaign UUID

        Returns:
            SettlementResult: Per-participant payout outcomes

        Raises:
            NotFoundError: If campaign doesn't exist
            DatabaseOperationError: If the status transition fails
        """
        try:
            campaign = await self.get_campaign(campaign_id)

            result = await self.session.execute(
                update(Campaign)
                .where(Campaign.id == campaign_id, _not_ended(Campaign.status))
                .values(status=CampaignStatus.ENDED, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await self.session.refresh(campaign)

            if result.rowcount == 0:
                logger.info(f"Campaign {campaign.title} already settled, no payouts")
                return SettlementResult(campaign=campaign, already_ended=True)

            settlement = SettlementResult(campaign=campaign)
            reason = f"campaign settlement: {campaign.title}"
            members = [(p.user_id, p.units) for p in await self.list_participants(campaign_id)]

            for user_id, quantity in members:
                points = settlement_points(quantity, campaign.price)
                if points <= 0:
                    settlement.payouts.append(
                        PayoutOutcome(user_id, quantity, points, PayoutStatus.SKIPPED)
                    )
                    continue

                try:
                    await self.points.apply_delta(user_id, points, reason, PointKind.EARN)
                    settlement.payouts.append(
                        PayoutOutcome(user_id, quantity, points, PayoutStatus.PAID)
                    )
                except DatabaseOperationError as e:
                    logger.warning(f"Settlement payout to {user_id} for {campaign.title} failed: {e}")
                    settlement.payouts.append(
                        PayoutOutcome(user_id, quantity, points, PayoutStatus.FAILED, str(e))
                    )

            logger.info(
                f"Settled {campaign.title}: paid {len(settlement.paid)} participants "
                f"{settlement.total_points} points, {len(settlement.failed)} failed"
            )

            settlement.renewal = await self._renew_if_filled(campaign)
            return settlement

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to settle campaign: {e}") from e


class AutoRenewOperations:
    """Spawns the next batch of a campaign series once a batch fills up."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _series(self, base: str) -> List[Campaign]:
        stmt = (
            select(Campaign)
            .where(Campaign.title.startswith(base, autoescape=True))
            .order_by(Campaign.created_at)
        )
        result = await self.session.execute(stmt)
        return [c for c in result.scalars().all() if base_title(c.title) == base]

    async def try_renew(self, campaign_id: UUID) -> RenewResult:
        """Create the successor of a full auto-renew campaign.

        Renewal is blocked while another non-ended batch of the same series
        is still below target, so re-running it never creates parallel
        successors. Titles are unique, so a concurrent renewal that lost the
        race reports ``successor_exists``.

        Args:
            campaign_id: Source campaign UUID

        Returns:
            RenewResult: The new campaign, or the reason renewal was blocked

        Raises:
            DatabaseOperationError: If a lookup or insert fails unexpectedly
        """
        try:
            source = (
                await self.session.execute(
                    select(Campaign)
                    .where(Campaign.id == campaign_id)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one_or_none()

            if source is None:
                return RenewResult(reason=RenewReason.NOT_FOUND)
            if not source.auto_renew:
                return RenewResult(reason=RenewReason.AUTO_RENEW_DISABLED)
            if not (
                source.effective_status == CampaignStatus.LOCKED
                or source.current_count >= source.target_count
            ):
                return RenewResult(reason=RenewReason.NOT_FULL)

            base = base_title(source.title)
            series = await self._series(base)

            for sibling in series:
                if sibling.id != source.id and not sibling.is_ended and sibling.current_count < sibling.target_count:
                    logger.info(f"Renewal of {source.title} blocked by open batch {sibling.title}")
                    return RenewResult(
                        reason=RenewReason.SIBLING_OPEN,
                        sibling_id=sibling.id,
                        sibling_title=sibling.title,
                    )

            successor = Campaign(
                title=next_series_title(base, [c.title for c in series]),
                price=source.price,
                description=source.description,
                features=list(source.features or []),
                target_count=source.target_count,
                is_hot=source.is_hot,
                image_url=source.image_url,
                auto_renew=source.auto_renew,
                parent_campaign_id=source.id,
            )
            try:
                async with self.session.begin_nested():
                    self.session.add(successor)
                    await self.session.flush()
            except IntegrityError:
                logger.info(f"Successor of {source.title} already exists")
                return RenewResult(reason=RenewReason.SUCCESSOR_EXISTS)

            logger.info(f"Auto-renewed {source.title} as {successor.title} ({successor.id})")
            return RenewResult(campaign=successor)

        except Exception as e:
            raise DatabaseOperationError(f"Failed to renew campaign: {e}") from e


class LotteryOperations:
    """Database operations for lotteries: administration, entries and draws.

    The draw claims the lottery with a ``pending -> ended`` conditional
    update before touching any entry, so concurrent or repeated draws (the
    list page check, the cron sweep and the poller) mark winners once.
    """

    EDITABLE_FIELDS = (
        "title",
        "description",
        "draw_date",
        "winners_count",
        "entry_cost",
        "min_participants",
        "prizes",
    )
    # Fields that stay editable after the draw
    DISPLAY_FIELDS = ("title", "description", "prizes")

    def __init__(self, session: AsyncSession, rng: Optional[random.Random] = None):
        """Initialize with database session.

        Args:
            session: SQLAlchemy async session
            rng: Random source for winner selection (defaults to ``SystemRandom``)
        """
        self.session = session
        self.rng = rng
        self.points = PointsOperations(session)

    # Queries

    async def get_lottery(self, lottery_id: UUID) -> Lottery:
        """Get lottery by ID, reloading it from the database.

        Raises:
            NotFoundError: If lottery doesn't exist
            DatabaseOperationError: If query fails
        """
        try:
            stmt = (
                select(Lottery)
                .where(Lottery.id == lottery_id)
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(stmt)
            lottery = result.scalar_one_or_none()

            if lottery is None:
                raise NotFoundError(f"Lottery not found: {lottery_id}")

            return lottery

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get lottery: {e}") from e

    async def list_lotteries(self, status: Optional[str] = None) -> List[Lottery]:
        """List lotteries by draw date, optionally filtered by status."""
        try:
            stmt = select(Lottery).execution_options(populate_existing=True)
            if status:
                stmt = stmt.where(Lottery.status == status)
            stmt = stmt.order_by(Lottery.draw_date, Lottery.created_at)

            result = await self.session.execute(stmt)
            return list(result.scalars().all())

        except Exception as e:
            raise DatabaseOperationError(f"Failed to list lotteries: {e}") from e

    async def count_entries(self, lottery_id: UUID) -> int:
        """Authoritative entry count, read from the entries table."""
        result = await self.session.execute(
            select(func.count(LotteryEntry.id)).where(LotteryEntry.lottery_id == lottery_id)
        )
        return result.scalar_one()

    async def get_detail(self, lottery_id: UUID, viewer_id: Optional[str] = None) -> LotteryDetail:
        """Lottery with live entry count, viewer's entry flag and masked winners."""
        try:
            lottery = await self.get_lottery(lottery_id)
            entry_count = await self.count_entries(lottery_id)

            has_entered = False
            if viewer_id:
                found = await self.session.execute(
                    select(LotteryEntry.id).where(
                        LotteryEntry.lottery_id == lottery_id,
                        LotteryEntry.user_id == viewer_id,
                    )
                )
                has_entered = found.scalar_one_or_none() is not None

            winners: List[str] = []
            if lottery.is_ended:
                stmt = (
                    select(LotteryEntry)
                    .options(selectinload(LotteryEntry.user))
                    .where(LotteryEntry.lottery_id == lottery_id, LotteryEntry.is_winner.is_(True))
                    .order_by(LotteryEntry.entered_at)
                    .execution_options(populate_existing=True)
                )
                for entry in (await self.session.execute(stmt)).scalars().all():
                    winners.append(mask_name(entry.user.name if entry.user else None))

            return LotteryDetail(
                lottery=lottery,
                entry_count=entry_count,
                has_entered=has_entered,
                winners=winners,
            )

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get lottery detail: {e}") from e

    async def list_entries(self, lottery_id: UUID) -> List[LotteryEntry]:
        """List a lottery's entries with their accounts, winners first."""
        try:
            await self.get_lottery(lottery_id)
            stmt = (
                select(LotteryEntry)
                .options(selectinload(LotteryEntry.user))
                .where(LotteryEntry.lottery_id == lottery_id)
                .order_by(desc(LotteryEntry.is_winner), LotteryEntry.entered_at)
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(stmt)
            return list(result.scalars().all())

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to list lottery entries: {e}") from e

    async def list_user_entries(self, user_id: str) -> List[LotteryEntry]:
        """List a user's lottery entries with their lotteries, newest first."""
        try:
            stmt = (
                select(LotteryEntry)
                .options(selectinload(LotteryEntry.lottery))
                .where(LotteryEntry.user_id == user_id)
                .order_by(desc(LotteryEntry.entered_at))
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(stmt)
            return list(result.scalars().all())

        except Exception as e:
            raise DatabaseOperationError(f"Failed to list user lottery entries: {e}") from e

    # Administration

    def _validate(self, values: Dict[str, Any]) -> None:
        if values.get("winners_count") is not None and values["winners_count"] < 1:
            raise ValidationError("Winners count must be at least 1")
        if values.get("entry_cost") is not None and values["entry_cost"] < 0:
            raise ValidationError("Entry cost must be non-negative")
        if values.get("min_participants") is not None and values["min_participants"] < 1:
            raise ValidationError("Minimum participants must be at least 1")

    async def create_lottery(
        self,
        title: str,
        draw_date: datetime,
        winners_count: int = 1,
        entry_cost: int = 0,
        min_participants: Optional[int] = None,
        description: str = "",
        prizes: Optional[List[Any]] = None,
    ) -> Lottery:
        """Create a pending lottery.

        Raises:
            ValidationError: If counts are out of range
            DatabaseOperationError: For database errors
        """
        self._validate({
            "winners_count": winners_count,
            "entry_cost": entry_cost,
            "min_participants": min_participants,
        })

        try:
            lottery = Lottery(
                title=title.strip(),
                description=description or "",
                draw_date=ensure_utc(draw_date),
                winners_count=winners_count,
                entry_cost=entry_cost,
                min_participants=min_participants,
                prizes=list(prizes or []),
            )
            self.session.add(lottery)
            await self.session.flush()

            logger.info(f"Created lottery {lottery.title} drawing at {lottery.draw_date.isoformat()}")
            return lottery

        except Exception as e:
            raise DatabaseOperationError(f"Failed to create lottery: {e}") from e

    async def update_lottery(self, lottery_id: UUID, updates: Dict[str, Any]) -> Lottery:
        """Update lottery fields; drawn lotteries only accept display fields.

        Raises:
            NotFoundError: If lottery doesn't exist
            ValidationError: If counts are out of range
            ConflictError: If draw settings of an ended lottery would change
            DatabaseOperationError: If update fails
        """
        values = {key: value for key, value in updates.items() if key in self.EDITABLE_FIELDS}
        self._validate(values)

        try:
            lottery = await self.get_lottery(lottery_id)

            if lottery.is_ended:
                locked = [key for key in values if key not in self.DISPLAY_FIELDS]
                if locked:
                    raise ConflictError(f"Lottery already drawn; cannot change {', '.join(sorted(locked))}")

            if "draw_date" in values and values["draw_date"] is not None:
                values["draw_date"] = ensure_utc(values["draw_date"])

            for key, value in values.items():
                if value is None and key not in ("min_participants",):
                    continue
                setattr(lottery, key, value)
            lottery.updated_at = utcnow()
            await self.session.flush()

            return lottery

        except (NotFoundError, ConflictError):
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to update lottery: {e}") from e

    async def delete_lottery(self, lottery_id: UUID) -> None:
        """Delete a lottery and its entries."""
        try:
            await self.get_lottery(lottery_id)
            await self.session.execute(delete(LotteryEntry).where(LotteryEntry.lottery_id == lottery_id))
            await self.session.execute(delete(Lottery).where(Lottery.id == lottery_id))
            logger.info(f"Deleted lottery {lottery_id}")

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to delete lottery: {e}") from e

    # Entries

    async def enter(self, lottery_id: UUID, user_id: str) -> EntryResult:
        """Enter a user into a pending lottery, spending the entry cost.

        The counter bump, entry row and points spend share one savepoint;
        any failure leaves none of them behind.

        Args:
            lottery_id: Lottery UUID
            user_id: Entering user

        Returns:
            EntryResult: Created entry, points spent and new balance

        Raises:
            NotFoundError: If lottery doesn't exist
            ConflictError: If the lottery has ended or the user already entered
            InsufficientPointsError: If the user can't afford the entry
            DatabaseOperationError: If operation fails
        """
        try:
            lottery = await self.get_lottery(lottery_id)
            if lottery.is_ended:
                raise ConflictError(f"Lottery {lottery.title} has ended")

            existing = await self.session.execute(
                select(LotteryEntry.id).where(
                    LotteryEntry.lottery_id == lottery_id,
                    LotteryEntry.user_id == user_id,
                )
            )
            if existing.scalar_one_or_none() is not None:
                raise ConflictError("You have already entered this lottery")

            entry = LotteryEntry(lottery_id=lottery_id, user_id=user_id, entry_cost=lottery.entry_cost)
            try:
                async with self.session.begin_nested():
                    opened = await self.session.execute(
                        update(Lottery)
                        .where(Lottery.id == lottery_id, Lottery.status == LotteryStatus.PENDING)
                        .values(participants=Lottery.participants + 1)
                        .execution_options(synchronize_session=False)
                    )
                    if opened.rowcount == 0:
                        raise ConflictError(f"Lottery {lottery.title} has ended")

                    self.session.add(entry)
                    await self.session.flush()

                    if lottery.entry_cost > 0:
                        balance = await self.points.apply_delta(
                            user_id,
                            lottery.entry_cost,
                            f"lottery entry: {lottery.title}",
                            PointKind.SPEND,
                            ensure_sufficient=True,
                        )
                    else:
                        balance = (await self.points.get_account(user_id)).points
            except IntegrityError as e:
                raise ConflictError("You have already entered this lottery") from e

            logger.info(f"User {user_id} entered lottery {lottery.title} for {lottery.entry_cost} points")
            return EntryResult(entry=entry, points_spent=lottery.entry_cost, balance=balance)

        except (NotFoundError, ConflictError):
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to enter lottery: {e}") from e

    async def update_entry_contact(
        self,
        lottery_id: UUID,
        user_id: str,
        contact_info: str
    ) -> None:
        """Set the contact details on a user's lottery entry."""
        try:
            result = await self.session.execute(
                update(LotteryEntry)
                .where(LotteryEntry.lottery_id == lottery_id, LotteryEntry.user_id == user_id)
                .values(contact_info=contact_info)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"No entry for {user_id} in lottery {lottery_id}")

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to update entry contact: {e}") from e

    # Draws

    async def attempt_draw(
        self,
        lottery_id: UUID,
        now: Optional[datetime] = None
    ) -> DrawOutcome:
        """Draw a due lottery, or defer it when under-subscribed.

        Skips lotteries that have ended or are not yet due. A due lottery
        with fewer entries than its minimum has its draw date moved to
        ``now`` plus the configured extension and is left untouched
        otherwise. Safe to call repeatedly.

        Args:
            lottery_id: Lottery UUID
            now: Current time (defaults to now)

        Returns:
            DrawOutcome: drawn, extended or skipped

        Raises:
            NotFoundError: If lottery doesn't exist
            DatabaseOperationError: If operation fails
        """
        now = ensure_utc(now) or utcnow()

        try:
            lottery = await self.get_lottery(lottery_id)
            if lottery.is_ended:
                return DrawOutcome(lottery_id, DrawStatus.SKIPPED, reason="ended")
            if now < ensure_utc(lottery.draw_date):
                return DrawOutcome(lottery_id, DrawStatus.SKIPPED, reason="not_due")

            entry_count = await self.count_entries(lottery_id)

            if entry_count < lottery.required_participants:
                return await self._extend(lottery, entry_count, now)

            return await self._draw(lottery, entry_count)

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to draw lottery: {e}") from e

    async def draw_now(self, lottery_id: UUID) -> DrawOutcome:
        """Manually draw a lottery regardless of its draw date (admin).

        Raises:
            NotFoundError: If lottery doesn't exist
            ConflictError: If the lottery has already been drawn
            ValidationError: If it has fewer entries than its minimum
            DatabaseOperationError: If operation fails
        """
        try:
            lottery = await self.get_lottery(lottery_id)
            if lottery.is_ended:
                raise ConflictError(f"Lottery {lottery.title} has already been drawn")

            entry_count = await self.count_entries(lottery_id)
            if entry_count < lottery.required_participants:
                raise ValidationError(
                    f"Not enough participants ({entry_count}/{lottery.required_participants})"
                )

            outcome = await self._draw(lottery, entry_count)
            if outcome.status == DrawStatus.SKIPPED:
                raise ConflictError(f"Lottery {lottery.title} has already been drawn")
            return outcome

        except (NotFoundError, ConflictError, ValidationError):
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to draw lottery: {e}") from e

    async def _extend(self, lottery: Lottery, entry_count: int, now: datetime) -> DrawOutcome:
        hours = get_settings().lottery_extension_hours
        new_date = now + timedelta(hours=hours)

        await self.session.execute(
            update(Lottery)
            .where(Lottery.id == lottery.id, Lottery.status == LotteryStatus.PENDING)
            .values(draw_date=new_date, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(lottery)

        logger.info(
            f"Lottery {lottery.title} has {entry_count}/{lottery.required_participants} entries, "
            f"draw extended {hours}h to {new_date.isoformat()}"
        )
        return DrawOutcome(
            lottery.id,
            DrawStatus.EXTENDED,
            entry_count=entry_count,
            new_draw_date=new_date,
        )

    async def _draw(self, lottery: Lottery, entry_count: int) -> DrawOutcome:
        # Claim first: only one caller gets past this update
        claimed = await self.session.execute(
            update(Lottery)
            .where(Lottery.id == lottery.id, Lottery.status == LotteryStatus.PENDING)
            .values(status=LotteryStatus.ENDED, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            await self.session.refresh(lottery)
            return DrawOutcome(lottery.id, DrawStatus.SKIPPED, entry_count=entry_count, reason="ended")

        user_ids = list(
            (
                await self.session.execute(
                    select(LotteryEntry.user_id)
                    .where(LotteryEntry.lottery_id == lottery.id)
                    .order_by(LotteryEntry.entered_at, LotteryEntry.id)
                )
            ).scalars().all()
        )
        winners_to_pick = min(lottery.winners_count, len(user_ids))
        chosen = fisher_yates_shuffle(user_ids, self.rng)[:winners_to_pick]

        marked: List[str] = []
        for user_id in chosen:
            try:
                async with self.session.begin_nested():
                    result = await self.session.execute(
                        update(LotteryEntry)
                        .where(LotteryEntry.lottery_id == lottery.id, LotteryEntry.user_id == user_id)
                        .values(is_winner=True)
                        .execution_options(synchronize_session=False)
                    )
                if result.rowcount > 0:
                    marked.append(user_id)
                else:
                    logger.warning(f"Winner mark for {user_id} in lottery {lottery.id} updated no rows")
            except Exception as e:
                logger.error(f"Failed to mark winner {user_id} in lottery {lottery.id}: {e}")

        await self.session.refresh(lottery)

        outcome = DrawOutcome(
            lottery.id,
            DrawStatus.DRAWN,
            entry_count=len(user_ids),
            winners_to_pick=winners_to_pick,
            winners_marked=len(marked),
            winners=marked,
        )
        if outcome.consistency_fault:
            logger.error(
                f"Lottery {lottery.title}: {winners_to_pick} winners due but no winner mark was applied"
            )
        else:
            logger.info(
                f"Drew lottery {lottery.title}: {len(marked)}/{winners_to_pick} winners "
                f"from {len(user_ids)} entries"
            )
        return outcome

    async def run_due_draws(self, now: Optional[datetime] = None) -> DrawSweepSummary:
        """Attempt every pending lottery whose draw date has passed.

        Each lottery runs in its own savepoint; a failure is counted and
        logged without stopping the sweep.
        """
        now = ensure_utc(now) or utcnow()
        summary = DrawSweepSummary()

        try:
            due_ids = list(
                (
                    await self.session.execute(
                        select(Lottery.id)
                        .where(Lottery.status == LotteryStatus.PENDING, Lottery.draw_date <= now)
                        .order_by(Lottery.draw_date)
                    )
                ).scalars().all()
            )
        except Exception as e:
            raise DatabaseOperationError(f"Failed to list due lotteries: {e}") from e

        for lottery_id in due_ids:
            try:
                async with self.session.begin_nested():
                    outcome = await self.attempt_draw(lottery_id, now)
                summary.record(outcome)
            except DatabaseOperationError as e:
                summary.errors += 1
                summary.failures.append({"lotteryId": str(lottery_id), "error": str(e)})
                logger.error(f"Draw sweep failed for lottery {lottery_id}: {e}")

        if due_ids:
            logger.info(
                f"Draw sweep: {summary.drawn} drawn, {summary.extended} extended, "
                f"{summary.skipped} skipped, {summary.errors} errors"
            )
        return summary
