from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from billing import (
    DuplicateOrder,
    InvalidCredential,
    InvalidState,
    OrderConflict,
    OrderRepository,
    OrderStatus,
    build_session_factory,
    init_billing_db,
    session_scope,
)


def _make_db():
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_billing_db(engine)
    return engine, session_factory


def test_create_pending_order_and_reject_duplicate_id() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = OrderRepository(session)
        order = repo.create_pending("ord_1", "plan_30", "tg_100")
        assert order.status == OrderStatus.PENDING
        assert order.credential is None
        assert order.paid_at is None

    with session_scope(sf) as session:
        with pytest.raises(DuplicateOrder):
            OrderRepository(session).create_pending("ord_1", "plan_90", "tg_100")

    with session_scope(sf) as session:
        stored = OrderRepository(session).find_by_id("ord_1")
        assert stored is not None
        assert stored.plan_id == "plan_30"


def test_mark_paid_requires_non_empty_credential() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = OrderRepository(session)
        repo.create_pending("ord_2", "plan_30", "tg_100")
        with pytest.raises(InvalidCredential):
            repo.mark_paid_with_credential("ord_2", "   ")
        assert repo.find_by_id("ord_2").status == OrderStatus.PENDING


def test_mark_paid_is_idempotent_and_paid_is_terminal() -> None:
    _engine, sf = _make_db()
    paid_at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    with session_scope(sf) as session:
        repo = OrderRepository(session)
        repo.create_pending("ord_3", "plan_30", "tg_100")
        first = repo.mark_paid_with_credential("ord_3", "https://vpn.example/sub/abc", paid_at=paid_at)
        assert first.status == OrderStatus.PAID
        assert first.credential == "https://vpn.example/sub/abc"

        again = repo.mark_paid_with_credential("ord_3", "https://vpn.example/sub/abc")
        assert again.credential == "https://vpn.example/sub/abc"

        with pytest.raises(InvalidState):
            repo.mark_paid_with_credential("ord_3", "https://vpn.example/sub/other")
        with pytest.raises(InvalidState):
            repo.mark_canceled("ord_3")

    with session_scope(sf) as session:
        stored = OrderRepository(session).find_by_id("ord_3")
        assert stored.status == OrderStatus.PAID
        assert stored.credential == "https://vpn.example/sub/abc"
        assert stored.paid_at.replace(tzinfo=timezone.utc) == paid_at


def test_canceled_order_cannot_be_paid() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = OrderRepository(session)
        repo.create_pending("ord_4", "plan_30", "tg_100")
        repo.mark_canceled("ord_4")
        assert repo.mark_canceled("ord_4").status == OrderStatus.CANCELED
        with pytest.raises(InvalidState):
            repo.mark_paid_with_credential("ord_4", "vless://x")


def test_attach_payment_intent_conflicts() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = OrderRepository(session)
        repo.create_pending("ord_a", "plan_30", "tg_1")
        repo.create_pending("ord_b", "plan_30", "tg_2")
        repo.attach_payment_intent("ord_a", "pay_1", "599.00", "rub")
        # Same payment, same amount: no-op.
        attached = repo.attach_payment_intent("ord_a", "pay_1", "599.00", "RUB")
        assert attached.amount_currency == "RUB"

        with pytest.raises(OrderConflict):
            repo.attach_payment_intent("ord_a", "pay_2", "599.00", "RUB")
        with pytest.raises(OrderConflict):
            repo.attach_payment_intent("ord_a", "pay_1", "1.00", "RUB")
        with pytest.raises(OrderConflict):
            repo.attach_payment_intent("ord_b", "pay_1", "599.00", "RUB")

        found = repo.find_by_gateway_payment_id("pay_1")
        assert found is not None and found.id == "ord_a"
        assert repo.find_by_gateway_payment_id("pay_missing") is None


def test_has_completed_payment_respects_cutoff() -> None:
    _engine, sf = _make_db()
    t0 = datetime(2026, 5, 1, tzinfo=timezone.utc)
    with session_scope(sf) as session:
        repo = OrderRepository(session)
        repo.create_pending("ord_old", "plan_30", "tg_5", now=t0)
        repo.create_pending("ord_pending", "plan_30", "tg_6", now=t0)
        assert repo.has_completed_payment("tg_5") is False
        repo.mark_paid_with_credential("ord_old", "vless://old")

        assert repo.has_completed_payment("tg_5") is True
        assert repo.has_completed_payment("tg_5", before=t0 + timedelta(days=1)) is True
        assert repo.has_completed_payment("tg_5", before=t0) is False
        assert repo.has_completed_payment("tg_6") is False
        assert repo.has_completed_payment("") is False


def test_last_paid_credential_and_paid_orders_window() -> None:
    _engine, sf = _make_db()
    t0 = datetime(2026, 6, 1, tzinfo=timezone.utc)
    with session_scope(sf) as session:
        repo = OrderRepository(session)
        repo.create_pending("ord_1", "plan_30", "tg_9", now=t0)
        repo.create_pending("ord_2", "plan_90", "tg_9", now=t0 + timedelta(days=3))
        repo.create_pending("ord_3", "plan_90", "tg_9", now=t0 + timedelta(days=40))
        repo.mark_paid_with_credential("ord_1", "sub-1", paid_at=t0)
        repo.mark_paid_with_credential("ord_2", "sub-2", paid_at=t0 + timedelta(days=3))

        assert repo.last_paid_credential("tg_9") == "sub-2"
        assert repo.last_paid_credential("tg_unknown") is None

        window = repo.list_paid_orders(created_from=t0, created_to=t0 + timedelta(days=30))
        assert [order.id for order in window] == ["ord_1", "ord_2"]
        after_first = repo.list_paid_orders(
            created_from=t0, created_to=t0 + timedelta(days=30), after=(window[0].created_at, window[0].id)
        )
        assert [order.id for order in after_first] == ["ord_2"]
        assert [order.id for order in repo.find_by_user_ref("tg_9")] == ["ord_3", "ord_2", "ord_1"]


def test_payment_event_journal_deduplicates() -> None:
    _engine, sf = _make_db()
    with session_scope(sf) as session:
        repo = OrderRepository(session)
        assert repo.record_payment_event(
            gateway_payment_id="pay_1", event="payment.succeeded", order_id="ord_1", event_id="evt_1"
        )
        # Same event id.
        assert not repo.record_payment_event(
            gateway_payment_id="pay_1", event="payment.succeeded", order_id="ord_1", event_id="evt_1"
        )
        # Provider retransmit under a new event id.
        assert not repo.record_payment_event(
            gateway_payment_id="pay_1", event="payment.succeeded", order_id="ord_1", event_id="evt_2"
        )
        assert repo.record_payment_event(gateway_payment_id="pay_1", event="payment.canceled", order_id="ord_1")

        assert repo.has_payment_event(event_id="evt_1")
        assert repo.has_payment_event(gateway_payment_id="pay_1", event="payment.canceled")
        assert not repo.has_payment_event(gateway_payment_id="pay_2", event="payment.succeeded")


def test_audit_log_listing_is_newest_first() -> None:
    _engine, sf = _make_db()
    t0 = datetime(2026, 7, 1, tzinfo=timezone.utc)
    with session_scope(sf) as session:
        repo = OrderRepository(session)
        repo.record_audit_log(
            event_type="payment.succeeded", raw_payload="{}", outcome="settled", order_id="ord_1", occurred_at=t0
        )
        repo.record_audit_log(
            event_type="payment.succeeded",
            raw_payload="{}",
            outcome="duplicate_event",
            order_id="ord_1",
            occurred_at=t0 + timedelta(minutes=1),
        )
        repo.record_audit_log(event_type="invalid", raw_payload="nope", outcome="invalid_payload", occurred_at=t0)

        logs = repo.list_audit_logs(order_id="ord_1")
        assert [log.outcome for log in logs] == ["duplicate_event", "settled"]
        assert len(repo.list_audit_logs()) == 3
