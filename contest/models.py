from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ContestBase(DeclarativeBase):
    pass


class LedgerReason(str, enum.Enum):
    SELF_PURCHASE = "SELF_PURCHASE"
    INVITEE_PAYMENT = "INVITEE_PAYMENT"


class QualificationStatus(str, enum.Enum):
    BOUND = "bound"
    QUALIFIED = "qualified"
    BLOCKED = "blocked"
    NOT_QUALIFIED = "not_qualified"


class Contest(ContestBase):
    __tablename__ = "contests"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    title: Mapped[str] = mapped_column(String(180))
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    attribution_window_days: Mapped[int] = mapped_column(Integer, default=7)
    rules_version: Mapped[str] = mapped_column(String(32), default="v1")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class ReferralBinding(ContestBase):
    __tablename__ = "user_referrals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referrer_id: Mapped[str] = mapped_column(String(64), index=True)
    # A user has at most one referrer.
    referred_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    bound_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class TicketLedgerEntry(ContestBase):
    __tablename__ = "ticket_ledger"
    __table_args__ = (
        UniqueConstraint("order_id", "reason", "referrer_id", name="uq_ticket_ledger_order_reason_party"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    contest_id: Mapped[str] = mapped_column(ForeignKey("contests.id"), index=True)
    referrer_id: Mapped[str] = mapped_column(String(64), index=True)
    referred_id: Mapped[str] = mapped_column(String(64), index=True)
    order_id: Mapped[str] = mapped_column(String(64), index=True)
    delta: Mapped[int] = mapped_column(Integer)
    reason: Mapped[LedgerReason] = mapped_column(Enum(LedgerReason, native_enum=False))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)


class ReferralQualification(ContestBase):
    __tablename__ = "ref_events"
    __table_args__ = (
        UniqueConstraint("contest_id", "referrer_id", "referred_id", name="uq_ref_events_contest_pair"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    contest_id: Mapped[str] = mapped_column(ForeignKey("contests.id"), index=True)
    referrer_id: Mapped[str] = mapped_column(String(64), index=True)
    referred_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[QualificationStatus] = mapped_column(
        Enum(QualificationStatus, native_enum=False),
        default=QualificationStatus.BOUND,
    )
    status_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    bound_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    qualified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


Index("ix_ticket_ledger_contest_referrer", TicketLedgerEntry.contest_id, TicketLedgerEntry.referrer_id)
Index("ix_contests_active_window", Contest.is_active, Contest.starts_at, Contest.ends_at)
