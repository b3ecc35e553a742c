"""Database models for the shopfront service."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import BigInteger
from sqlalchemy import Boolean
from sqlalchemy import DateTime
from sqlalchemy import ForeignKey
from sqlalchemy import Index, UniqueConstraint, CheckConstraint
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import Numeric
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.orm import Mapped, relationship
from sqlalchemy.orm import mapped_column

from shopfront.shared.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole:
    USER = "user"
    ADMIN = "admin"


class PointKind:
    EARN = "earn"
    SPEND = "spend"

    ALL = (EARN, SPEND)


class CampaignStatus:
    """Campaign statuses.

    Only ``ENDED`` is ever persisted (as a manual override); ``OPEN`` and
    ``LOCKED`` are derived from enrolment.
    """

    OPEN = "open"
    LOCKED = "locked"
    ENDED = "ended"


class LotteryStatus:
    PENDING = "pending"
    ENDED = "ended"


def derive_status(override: Optional[str], enrolled: int, target: int) -> str:
    """Derive a campaign's effective status.

    ``ended`` when manually overridden, ``locked`` once enrolment reaches
    the target, ``open`` otherwise.
    """
    if override == CampaignStatus.ENDED:
        return CampaignStatus.ENDED
    if enrolled >= target:
        return CampaignStatus.LOCKED
    return CampaignStatus.OPEN


class UserAccount(Base):
    """Storefront account with cached points balance and check-in streak.

    The account id is the identity issued by the external auth provider.
    ``points`` is a materialized view of the point log and is only ever
    changed by the points ledger.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        doc="External user identifier"
    )
    name: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        doc="Display name"
    )
    email: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        doc="Contact email"
    )
    role: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=UserRole.USER,
        doc="Role flag: user or admin"
    )
    points: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
        doc="Current points balance"
    )

    # Daily check-in tracking
    check_in_streak: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        doc="Consecutive daily check-ins"
    )
    last_check_in: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="Timestamp of the last check-in"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    def __init__(self, **kwargs):
        kwargs.setdefault('role', UserRole.USER)
        kwargs.setdefault('points', 0)
        kwargs.setdefault('check_in_streak', 0)
        super().__init__(**kwargs)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class PointLog(Base):
    """Append-only points ledger entry.

    ``delta`` is signed (negative for spends); the sum of a user's deltas
    equals their balance.
    """

    __tablename__ = "point_logs"

    id: Mapped[UUID] = mapped_column(
        PostgresUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    delta: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        doc="Signed change applied to the balance"
    )
    kind: Mapped[str] = mapped_column(
        String(8),
        nullable=False,
        doc="earn or spend"
    )
    reason: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        doc="Human readable reason shown in the history"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        Index("ix_point_logs_user_id", "user_id"),
        Index("ix_point_logs_user_created", "user_id", "created_at"),
        CheckConstraint("kind IN ('earn', 'spend')", name="ck_point_logs_kind"),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault('id', uuid4())
        kwargs.setdefault('created_at', _utcnow())
        super().__init__(**kwargs)

    @property
    def amount(self) -> int:
        return abs(self.delta)


class Campaign(Base):
    """Group-buy campaign.

    Campaigns of the same series share a base title and are numbered
    ``<base> #<n>``; successors point at their source through
    ``parent_campaign_id``. ``current_count`` caches the sum of participant
    quantities and never exceeds ``target_count``.
    """

    __tablename__ = "campaigns"

    id: Mapped[UUID] = mapped_column(
        PostgresUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    title: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        doc="Campaign title, optionally with a series suffix"
    )
    description: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
    )
    features: Mapped[list] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        doc="Feature bullet points"
    )
    price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        doc="Unit price"
    )
    target_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        doc="Units needed to lock the campaign"
    )
    current_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        doc="Units currently reserved by participants"
    )
    status: Mapped[Optional[str]] = mapped_column(
        String(16),
        nullable=True,
        doc="Manual status override (only 'ended' is persisted)"
    )
    auto_renew: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    is_hot: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    image_url: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )
    parent_campaign_id: Mapped[Optional[UUID]] = mapped_column(
        PostgresUUID(as_uuid=True),
        ForeignKey("campaigns.id", ondelete="SET NULL"),
        nullable=True,
        doc="Campaign this one was renewed from"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        Index("ix_campaigns_created_at", "created_at"),
        Index("ix_campaigns_parent", "parent_campaign_id"),
        UniqueConstraint("title", name="uq_campaigns_title"),
        CheckConstraint("target_count >= 1", name="ck_campaigns_target_positive"),
        CheckConstraint(
            "current_count >= 0 AND current_count <= target_count",
            name="ck_campaigns_capacity",
        ),
    )

    def __init__(self, **kwargs):
        now = _utcnow()
        kwargs.setdefault('id', uuid4())
        kwargs.setdefault('created_at', now)
        kwargs.setdefault('updated_at', now)
        kwargs.setdefault('description', '')
        kwargs.setdefault('features', [])
        kwargs.setdefault('current_count', 0)
        kwargs.setdefault('auto_renew', False)
        kwargs.setdefault('is_hot', False)
        super().__init__(**kwargs)

    @property
    def effective_status(self) -> str:
        return derive_status(self.status, self.current_count, self.target_count)

    @property
    def is_ended(self) -> bool:
        return self.status == CampaignStatus.ENDED

    @property
    def available(self) -> int:
        return max(0, self.target_count - self.current_count)

    def __repr__(self) -> str:
        return f"<Campaign(title='{self.title}', count={self.current_count}/{self.target_count})>"


class CampaignParticipant(Base):
    """A user's reservation in a campaign.

    At most one row per (campaign, user); repeated joins merge quantities.
    """

    __tablename__ = "campaign_participants"

    id: Mapped[UUID] = mapped_column(
        PostgresUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    campaign_id: Mapped[UUID] = mapped_column(
        PostgresUUID(as_uuid=True),
        ForeignKey("campaigns.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    quantity: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        default=1,
        doc="Units reserved (null is read as 1)"
    )
    contact_info: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    contacted: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        doc="Whether an admin has contacted this participant"
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    campaign: Mapped["Campaign"] = relationship("Campaign")
    user: Mapped["UserAccount"] = relationship("UserAccount")

    __table_args__ = (
        Index("ix_campaign_participants_campaign", "campaign_id"),
        Index("ix_campaign_participants_user", "user_id"),
        UniqueConstraint("campaign_id", "user_id", name="uq_campaign_participants_member"),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault('id', uuid4())
        kwargs.setdefault('quantity', 1)
        kwargs.setdefault('contacted', False)
        kwargs.setdefault('joined_at', _utcnow())
        super().__init__(**kwargs)

    @property
    def units(self) -> int:
        """Reserved units, treating a missing quantity as 1."""
        return self.quantity or 1


class Lottery(Base):
    """Scheduled points lottery."""

    __tablename__ = "lotteries"

    id: Mapped[UUID] = mapped_column(
        PostgresUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    draw_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        doc="When the draw is due (UTC)"
    )
    winners_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )
    entry_cost: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        doc="Points spent to enter"
    )
    min_participants: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        doc="Entries required before the draw runs (null is read as 1)"
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=LotteryStatus.PENDING,
    )
    participants: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        doc="Cached entry counter (display only)"
    )
    prizes: Mapped[list] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        Index("ix_lotteries_status_draw_date", "status", "draw_date"),
        CheckConstraint("winners_count >= 0", name="ck_lotteries_winners"),
        CheckConstraint("entry_cost >= 0", name="ck_lotteries_entry_cost"),
    )

    def __init__(self, **kwargs):
        now = _utcnow()
        kwargs.setdefault('id', uuid4())
        kwargs.setdefault('created_at', now)
        kwargs.setdefault('updated_at', now)
        kwargs.setdefault('description', '')
        kwargs.setdefault('status', LotteryStatus.PENDING)
        kwargs.setdefault('participants', 0)
        kwargs.setdefault('prizes', [])
        super().__init__(**kwargs)

    @property
    def required_participants(self) -> int:
        return self.min_participants or 1

    @property
    def is_ended(self) -> bool:
        return self.status == LotteryStatus.ENDED

    def __repr__(self) -> str:
        return f"<Lottery(title='{self.title}', status='{self.status}')>"


class LotteryEntry(Base):
    """A user's entry in a lottery; ``is_winner`` is only set by the draw."""

    __tablename__ = "lottery_entries"

    id: Mapped[UUID] = mapped_column(
        PostgresUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    lottery_id: Mapped[UUID] = mapped_column(
        PostgresUUID(as_uuid=True),
        ForeignKey("lotteries.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    entry_cost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_winner: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    contact_info: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    entered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    lottery: Mapped["Lottery"] = relationship("Lottery")
    user: Mapped["UserAccount"] = relationship("UserAccount")

    __table_args__ = (
        Index("ix_lottery_entries_lottery", "lottery_id"),
        Index("ix_lottery_entries_user", "user_id"),
        UniqueConstraint("lottery_id", "user_id", name="uq_lottery_entries_member"),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault('id', uuid4())
        kwargs.setdefault('entry_cost', 0)
        kwargs.setdefault('is_winner', False)
        kwargs.setdefault('entered_at', _utcnow())
        super().__init__(**kwargs)
