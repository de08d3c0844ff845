from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Enum, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELED = "canceled"


class Order(Base):
    __tablename__ = "billing_orders"

    # Assigned by the purchase flow, never by storage.
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    plan_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[OrderStatus] = mapped_column(Enum(OrderStatus, native_enum=False), default=OrderStatus.PENDING)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True, index=True)
    amount_value: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    amount_currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    credential: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class PaymentEvent(Base):
    """Journal of gateway notifications whose effect has been committed."""

    __tablename__ = "billing_payment_events"
    __table_args__ = (UniqueConstraint("gateway_payment_id", "event", name="uq_billing_payment_events_payment_event"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True, index=True)
    gateway_payment_id: Mapped[str] = mapped_column(String(128), index=True)
    event: Mapped[str] = mapped_column(String(64))
    order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class VpnCredential(Base):
    __tablename__ = "vpn_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_ref: Mapped[str] = mapped_column(String(64), index=True)
    panel_username: Mapped[str] = mapped_column(String(128))
    credential_value: Mapped[str] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class BillingAuditLog(Base):
    """
    Append-only record of every webhook delivery, including the ones that were
    rejected or ignored. The raw payload is kept for dispute resolution.
    """

    __tablename__ = "billing_audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    provider: Mapped[str] = mapped_column(String(32), default="yookassa", index=True)
    event_type: Mapped[str] = mapped_column(String(64), index=True)
    external_event_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    source_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    raw_payload: Mapped[str] = mapped_column(Text)
    outcome: Mapped[str] = mapped_column(String(32), index=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


Index("ix_billing_orders_user_status", Order.user_ref, Order.status)
# At most one active credential per user.
Index(
    "uq_vpn_credentials_active_user",
    VpnCredential.user_ref,
    unique=True,
    sqlite_where=text("is_active = 1"),
    postgresql_where=text("is_active"),
)
