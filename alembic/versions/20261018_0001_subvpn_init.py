"""Initialize orders, payment journal, credentials, audit log and contest schema.

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind: sa.engine.Connection, table_name: str) -> bool:
    inspector = sa.inspect(bind)
    return table_name in set(inspector.get_table_names())


def _has_index(bind: sa.engine.Connection, table_name: str, index_name: str) -> bool:
    inspector = sa.inspect(bind)
    if table_name not in set(inspector.get_table_names()):
        return False
    return any(item.get("name") == index_name for item in inspector.get_indexes(table_name))


def _create_index(bind: sa.engine.Connection, table_name: str, index_name: str, columns: list[str], **kw) -> None:
    if not _has_index(bind, table_name, index_name):
        op.create_index(index_name, table_name, columns, **kw)


def upgrade() -> None:
    bind = op.get_bind()

    if not _table_exists(bind, "billing_orders"):
        op.create_table(
            "billing_orders",
            sa.Column("id", sa.String(length=64), nullable=False),
            sa.Column("user_ref", sa.String(length=64), nullable=True),
            sa.Column("plan_id", sa.String(length=64), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False),
            sa.Column("gateway_payment_id", sa.String(length=128), nullable=True),
            sa.Column("amount_value", sa.String(length=32), nullable=True),
            sa.Column("amount_currency", sa.String(length=8), nullable=True),
            sa.Column("credential", sa.Text(), nullable=True),
            sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "billing_orders", "ix_billing_orders_user_ref", ["user_ref"])
    _create_index(bind, "billing_orders", "ix_billing_orders_plan_id", ["plan_id"])
    _create_index(bind, "billing_orders", "ix_billing_orders_created_at", ["created_at"])
    _create_index(bind, "billing_orders", "ix_billing_orders_gateway_payment_id", ["gateway_payment_id"], unique=True)
    _create_index(bind, "billing_orders", "ix_billing_orders_user_status", ["user_ref", "status"])

    if not _table_exists(bind, "billing_payment_events"):
        op.create_table(
            "billing_payment_events",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("event_id", sa.String(length=128), nullable=True),
            sa.Column("gateway_payment_id", sa.String(length=128), nullable=False),
            sa.Column("event", sa.String(length=64), nullable=False),
            sa.Column("order_id", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("gateway_payment_id", "event", name="uq_billing_payment_events_payment_event"),
        )
    _create_index(bind, "billing_payment_events", "ix_billing_payment_events_event_id", ["event_id"], unique=True)
    _create_index(bind, "billing_payment_events", "ix_billing_payment_events_gateway_payment_id", ["gateway_payment_id"])
    _create_index(bind, "billing_payment_events", "ix_billing_payment_events_order_id", ["order_id"])

    if not _table_exists(bind, "vpn_credentials"):
        op.create_table(
            "vpn_credentials",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("user_ref", sa.String(length=64), nullable=False),
            sa.Column("panel_username", sa.String(length=128), nullable=False),
            sa.Column("credential_value", sa.Text(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
            sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "vpn_credentials", "ix_vpn_credentials_user_ref", ["user_ref"])
    _create_index(
        bind,
        "vpn_credentials",
        "uq_vpn_credentials_active_user",
        ["user_ref"],
        unique=True,
        sqlite_where=sa.text("is_active = 1"),
        postgresql_where=sa.text("is_active"),
    )

    if not _table_exists(bind, "billing_audit_logs"):
        op.create_table(
            "billing_audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("provider", sa.String(length=32), nullable=False, server_default=sa.text("'yookassa'")),
            sa.Column("event_type", sa.String(length=64), nullable=False),
            sa.Column("external_event_id", sa.String(length=128), nullable=True),
            sa.Column("gateway_payment_id", sa.String(length=128), nullable=True),
            sa.Column("order_id", sa.String(length=64), nullable=True),
            sa.Column("source_ip", sa.String(length=64), nullable=True),
            sa.Column("raw_payload", sa.Text(), nullable=False),
            sa.Column("outcome", sa.String(length=32), nullable=False),
            sa.Column("detail", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
    for column in ("occurred_at", "provider", "event_type", "external_event_id", "gateway_payment_id", "order_id", "outcome"):
        _create_index(bind, "billing_audit_logs", f"ix_billing_audit_logs_{column}", [column])

    if not _table_exists(bind, "contests"):
        op.create_table(
            "contests",
            sa.Column("id", sa.String(length=64), nullable=False),
            sa.Column("title", sa.String(length=180), nullable=False),
            sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("attribution_window_days", sa.Integer(), nullable=False, server_default=sa.text("7")),
            sa.Column("rules_version", sa.String(length=32), nullable=False, server_default=sa.text("'v1'")),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "contests", "ix_contests_starts_at", ["starts_at"])
    _create_index(bind, "contests", "ix_contests_ends_at", ["ends_at"])
    _create_index(bind, "contests", "ix_contests_is_active", ["is_active"])
    _create_index(bind, "contests", "ix_contests_active_window", ["is_active", "starts_at", "ends_at"])

    if not _table_exists(bind, "user_referrals"):
        op.create_table(
            "user_referrals",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("referrer_id", sa.String(length=64), nullable=False),
            sa.Column("referred_id", sa.String(length=64), nullable=False),
            sa.Column("bound_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "user_referrals", "ix_user_referrals_referrer_id", ["referrer_id"])
    _create_index(bind, "user_referrals", "ix_user_referrals_referred_id", ["referred_id"], unique=True)

    if not _table_exists(bind, "ticket_ledger"):
        op.create_table(
            "ticket_ledger",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("contest_id", sa.String(length=64), nullable=False),
            sa.Column("referrer_id", sa.String(length=64), nullable=False),
            sa.Column("referred_id", sa.String(length=64), nullable=False),
            sa.Column("order_id", sa.String(length=64), nullable=False),
            sa.Column("delta", sa.Integer(), nullable=False),
            sa.Column("reason", sa.String(length=32), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["contest_id"], ["contests.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("order_id", "reason", "referrer_id", name="uq_ticket_ledger_order_reason_party"),
        )
    for column in ("contest_id", "referrer_id", "referred_id", "order_id", "created_at"):
        _create_index(bind, "ticket_ledger", f"ix_ticket_ledger_{column}", [column])
    _create_index(bind, "ticket_ledger", "ix_ticket_ledger_contest_referrer", ["contest_id", "referrer_id"])

    if not _table_exists(bind, "ref_events"):
        op.create_table(
            "ref_events",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("contest_id", sa.String(length=64), nullable=False),
            sa.Column("referrer_id", sa.String(length=64), nullable=False),
            sa.Column("referred_id", sa.String(length=64), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False),
            sa.Column("status_reason", sa.String(length=255), nullable=True),
            sa.Column("bound_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("qualified_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["contest_id"], ["contests.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("contest_id", "referrer_id", "referred_id", name="uq_ref_events_contest_pair"),
        )
    for column in ("contest_id", "referrer_id", "referred_id"):
        _create_index(bind, "ref_events", f"ix_ref_events_{column}", [column])


def downgrade() -> None:
    for table_name in (
        "ref_events",
        "ticket_ledger",
        "user_referrals",
        "contests",
        "billing_audit_logs",
        "vpn_credentials",
        "billing_payment_events",
        "billing_orders",
    ):
        op.drop_table(table_name)
