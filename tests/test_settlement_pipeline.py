"""Webhook settlement: state machine, idempotency under redelivery and partial failures."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
from sqlalchemy.exc import OperationalError

from billing import (
    OrderRepository,
    OrderStatus,
    SettlementPipeline,
    VpnCredentialStore,
    WebhookForbidden,
    build_session_factory,
    init_billing_db,
    load_plan_catalog,
    session_scope,
)
from contest import ContestRepository, TicketAwardService, init_contest_db
from vpn import MarzbanClient, VpnProvisioningService

DAY = 86400


class _RecordingNotifier:
    def __init__(self) -> None:
        self.user_messages: list[tuple[str, str]] = []
        self.alerts: list[tuple[str, dict]] = []

    async def notify_user(self, user_ref: str, text: str) -> bool:
        self.user_messages.append((user_ref, text))
        return True

    async def alert_operators(self, title: str, **fields: Any) -> int:
        self.alerts.append((title, fields))
        return 1


class _Harness:
    def __init__(self, sf, panel, *, award=None, ip_check_enabled: bool = False, allowed_networks=()) -> None:
        self.sf = sf
        self.panel = panel
        self.notifier = _RecordingNotifier()
        self.enqueued: list[tuple[tuple, dict]] = []
        self.awards = TicketAwardService(
            session_factory=sf,
            payment_history=self._paid_before,
        )
        client = MarzbanClient("http://panel.test", "admin", "secret", transport=panel.transport())
        self.provisioning = VpnProvisioningService(client, public_url="https://vpn.example", inbound_tag="VLESS")
        self.pipeline = SettlementPipeline(
            session_factory=sf,
            plans=load_plan_catalog([]),
            provisioning=self.provisioning,
            award=award or self.awards.award_tickets_for_payment,
            enqueue_retry=self._enqueue,
            notifier=self.notifier,
            ip_check_enabled=ip_check_enabled,
            allowed_networks=allowed_networks,
        )

    def _paid_before(self, user_ref: str, before: datetime) -> bool:
        with session_scope(self.sf) as session:
            return OrderRepository(session).has_completed_payment(user_ref, before=before)

    def _enqueue(self, *args, **kwargs) -> None:
        self.enqueued.append((args, kwargs))

    def handle(self, payload: Any, *, source_ip: Optional[str] = None):
        return asyncio.run(self.pipeline.handle(payload, source_ip=source_ip))


def _create_order(
    sf,
    order_id: str = "ord_1",
    *,
    plan_id: str = "plan_30",
    user_ref: Optional[str] = "tg_1",
    payment_id: str = "pay_1",
    amount: str = "599.00",
) -> None:
    with session_scope(sf) as session:
        repo = OrderRepository(session)
        repo.create_pending(order_id, plan_id, user_ref)
        repo.attach_payment_intent(order_id, payment_id, amount, "RUB")


def _notification(
    payment_id: str = "pay_1",
    *,
    event: str = "payment.succeeded",
    order_id: Optional[str] = "ord_1",
    event_id: Optional[str] = None,
    paid: bool = True,
    amount: Optional[str] = "599.00",
    user_ref: Optional[str] = None,
) -> dict:
    metadata: dict = {}
    if order_id:
        metadata["orderId"] = order_id
    if user_ref:
        metadata["userRef"] = user_ref
    payment: dict = {
        "id": payment_id,
        "status": "succeeded" if paid else "canceled",
        "paid": paid,
        "metadata": metadata,
    }
    if amount is not None:
        payment["amount"] = {"value": amount, "currency": "RUB"}
    payload = {"type": "notification", "event": event, "object": payment}
    if event_id:
        payload["event_id"] = event_id
    return payload


def _order(sf, order_id: str = "ord_1"):
    with session_scope(sf) as session:
        return OrderRepository(session).find_by_id(order_id)


def _ledger(sf, order_id: str = "ord_1"):
    with session_scope(sf) as session:
        return [
            (entry.referrer_id, entry.reason.value, entry.delta)
            for entry in ContestRepository(session).ledger_entries_for_order(order_id)
        ]


def _seed_active_contest(sf) -> str:
    now = datetime.now(timezone.utc)
    with session_scope(sf) as session:
        return ContestRepository(session).create_contest(
            title="Draw",
            starts_at=now - timedelta(days=1),
            ends_at=now + timedelta(days=30),
        ).id


def test_succeeded_webhook_settles_order_end_to_end(session_factory, fake_panel) -> None:
    _seed_active_contest(session_factory)
    _create_order(session_factory)
    harness = _Harness(session_factory, fake_panel)

    result = harness.handle(_notification(event_id="evt_1"))

    assert result.outcome == "settled"
    order = _order(session_factory)
    assert order.status == OrderStatus.PAID
    assert order.credential == f"https://vpn.example{fake_panel.users['tg_1']['subscription_url']}"
    assert order.paid_at is not None
    assert _ledger(session_factory) == [("tg_1", "SELF_PURCHASE", 1)]

    with session_scope(session_factory) as session:
        active = VpnCredentialStore(session).get_active("tg_1")
        assert active is not None and active.credential_value == order.credential
        audit = OrderRepository(session).list_audit_logs(order_id="ord_1")
    assert [log.outcome for log in audit] == ["settled"]
    assert harness.notifier.user_messages[0][0] == "tg_1"
    assert order.credential in harness.notifier.user_messages[0][1]


def test_provisioning_timeout_then_redelivery_settles_once(session_factory, fake_panel, caplog) -> None:
    _seed_active_contest(session_factory)
    _create_order(session_factory)
    harness = _Harness(session_factory, fake_panel)
    fake_panel.fail_next = 1

    with caplog.at_level(logging.INFO):
        first = harness.handle(_notification(event_id="evt_1"))
    assert first.outcome == "provisioning_failed"
    assert _order(session_factory).status == OrderStatus.PENDING
    assert _ledger(session_factory) == []
    assert harness.notifier.alerts and harness.notifier.alerts[0][1]["order_id"] == "ord_1"
    assert any(
        record.getMessage() == "billing.settlement.provisioning_failed" and record.levelno == logging.CRITICAL
        for record in caplog.records
    )

    second = harness.handle(_notification(event_id="evt_1"))
    third = harness.handle(_notification(event_id="evt_1"))
    assert second.outcome == "settled"
    assert third.outcome == "duplicate_event"

    order = _order(session_factory)
    assert order.status == OrderStatus.PAID
    assert _ledger(session_factory) == [("tg_1", "SELF_PURCHASE", 1)]
    expire = fake_panel.users["tg_1"]["expire"]
    assert expire - 30 * DAY <= int(datetime.now(timezone.utc).timestamp()) + 5


def test_redelivery_under_new_event_id_is_a_duplicate(session_factory, fake_panel) -> None:
    _create_order(session_factory)
    harness = _Harness(session_factory, fake_panel)

    assert harness.handle(_notification(event_id="evt_1")).outcome == "settled"
    calls = fake_panel.provisioning_calls()
    assert harness.handle(_notification(event_id="evt_2")).outcome == "duplicate_event"
    assert harness.handle(_notification()).outcome == "duplicate_event"
    assert fake_panel.provisioning_calls() == calls
    assert len(harness.notifier.user_messages) == 1


def test_concurrent_deliveries_provision_once(tmp_path, fake_panel) -> None:
    engine, sf = build_session_factory(f"sqlite+pysqlite:///{tmp_path / 'settle.db'}")
    init_billing_db(engine, use_migrations=False)
    init_contest_db(engine, use_migrations=False)
    _create_order(sf)
    harness = _Harness(sf, fake_panel)

    async def scenario():
        return await asyncio.gather(
            harness.pipeline.handle(_notification(event_id="evt_1")),
            harness.pipeline.handle(_notification(event_id="evt_1")),
        )

    results = asyncio.run(scenario())
    assert sorted(result.outcome for result in results) == ["duplicate_event", "settled"]
    assert fake_panel.provisioning_calls() == 1
    engine.dispose()


def test_invalid_payload_is_acknowledged_and_audited(session_factory, fake_panel) -> None:
    harness = _Harness(session_factory, fake_panel)

    assert harness.handle({"type": "notification", "event": "payment.succeeded"}).outcome == "invalid_payload"
    assert harness.handle(None).outcome == "invalid_payload"
    assert harness.handle({"type": "refund", "event": "x", "object": {"id": "p"}}).outcome == "invalid_payload"

    with session_scope(session_factory) as session:
        logs = OrderRepository(session).list_audit_logs()
    assert len(logs) == 3
    assert {log.event_type for log in logs} == {"invalid"}
    assert fake_panel.calls == []


def test_unresolvable_order_is_acknowledged(session_factory, fake_panel) -> None:
    harness = _Harness(session_factory, fake_panel)
    result = harness.handle(_notification("pay_unknown", order_id=None))
    assert result.outcome == "order_unresolved"
    assert harness.handle(_notification("pay_unknown", order_id="ord_missing")).outcome == "order_not_found"
    assert fake_panel.calls == []


def test_order_resolved_by_payment_id_when_metadata_is_missing(session_factory, fake_panel) -> None:
    _create_order(session_factory)
    harness = _Harness(session_factory, fake_panel)
    result = harness.handle(_notification(order_id=None))
    assert result.outcome == "settled"
    assert result.order_id == "ord_1"


def test_user_ref_falls_back_to_metadata(session_factory, fake_panel) -> None:
    _create_order(session_factory, user_ref=None)
    harness = _Harness(session_factory, fake_panel)

    assert harness.handle(_notification(user_ref="tg_77")).outcome == "settled"
    order = _order(session_factory)
    assert order.user_ref == "tg_77"
    assert "tg_77" in fake_panel.users


def test_order_without_any_user_reference_is_rejected(session_factory, fake_panel) -> None:
    _create_order(session_factory, user_ref=None)
    harness = _Harness(session_factory, fake_panel)
    assert harness.handle(_notification()).outcome == "rejected_state"
    assert _order(session_factory).status == OrderStatus.PENDING


def test_amount_mismatch_is_a_conflict(session_factory, fake_panel) -> None:
    _create_order(session_factory)
    harness = _Harness(session_factory, fake_panel)
    assert harness.handle(_notification(amount="1.00")).outcome == "conflict"
    assert _order(session_factory).status == OrderStatus.PENDING
    assert fake_panel.calls == []


def test_cancel_then_late_success_is_rejected(session_factory, fake_panel) -> None:
    _create_order(session_factory)
    harness = _Harness(session_factory, fake_panel)

    assert harness.handle(_notification(event="payment.canceled", paid=False)).outcome == "canceled"
    assert _order(session_factory).status == OrderStatus.CANCELED
    assert harness.handle(_notification(event="payment.canceled", paid=False)).outcome == "duplicate_event"
    assert harness.handle(_notification()).outcome == "rejected_state"
    assert _order(session_factory).status == OrderStatus.CANCELED
    assert fake_panel.provisioning_calls() == 0


def test_cancel_after_paid_keeps_order_paid(session_factory, fake_panel) -> None:
    _create_order(session_factory)
    harness = _Harness(session_factory, fake_panel)
    assert harness.handle(_notification()).outcome == "settled"
    assert harness.handle(_notification(event="payment.canceled", paid=False)).outcome == "rejected_state"
    assert _order(session_factory).status == OrderStatus.PAID


def test_unpaid_succeeded_event_is_ignored(session_factory, fake_panel) -> None:
    _create_order(session_factory)
    harness = _Harness(session_factory, fake_panel)
    assert harness.handle(_notification(event="payment.waiting_for_capture", paid=False)).outcome == "ignored"
    assert _order(session_factory).status == OrderStatus.PENDING


def test_ticket_award_failure_queues_retry_without_touching_order(session_factory, fake_panel) -> None:
    _create_order(session_factory)

    def failing_award(*_args):
        raise RuntimeError("contest db unavailable")

    harness = _Harness(session_factory, fake_panel, award=failing_award)
    assert harness.handle(_notification()).outcome == "settled"
    assert _order(session_factory).status == OrderStatus.PAID

    assert len(harness.enqueued) == 1
    args, kwargs = harness.enqueued[0]
    assert args[:3] == ("tg_1", "ord_1", "plan_30")
    assert isinstance(args[3], datetime)
    assert kwargs["error"] == "contest db unavailable"


def test_paid_order_missing_credential_is_repaired_without_extending(session_factory, fake_panel) -> None:
    _create_order(session_factory)
    expire = int(datetime.now(timezone.utc).timestamp()) + 10 * DAY
    fake_panel.add_user("tg_1", expire=expire)
    with session_scope(session_factory) as session:
        order = OrderRepository(session).find_by_id("ord_1")
        order.status = OrderStatus.PAID
        order.paid_at = datetime.now(timezone.utc)

    awarded = []
    harness = _Harness(session_factory, fake_panel, award=lambda *args: awarded.append(args) or True)
    assert harness.handle(_notification()).outcome == "repaired"

    order = _order(session_factory)
    assert order.credential
    assert fake_panel.users["tg_1"]["expire"] == expire
    assert awarded == []
    assert harness.handle(_notification()).outcome == "duplicate_event"


def test_source_ip_allow_list(session_factory, fake_panel) -> None:
    _create_order(session_factory)
    harness = _Harness(
        session_factory,
        fake_panel,
        ip_check_enabled=True,
        allowed_networks=["185.71.76.0/27", "2a02:5180::/32", "not-a-network"],
    )

    with pytest.raises(WebhookForbidden):
        harness.handle(_notification(), source_ip="10.1.2.3")
    with pytest.raises(WebhookForbidden):
        harness.handle(_notification(), source_ip=None)
    assert _order(session_factory).status == OrderStatus.PENDING

    assert harness.handle(_notification(), source_ip="185.71.76.10").outcome == "settled"

    with session_scope(session_factory) as session:
        outcomes = sorted(log.outcome for log in OrderRepository(session).list_audit_logs())
    assert outcomes == ["forbidden", "forbidden", "settled"]


def test_credential_commit_failure_after_provisioning_is_critical(
    session_factory, fake_panel, monkeypatch, caplog
) -> None:
    _create_order(session_factory)
    harness = _Harness(session_factory, fake_panel)

    def broken_commit(self, order_id, credential, **kwargs):
        raise OperationalError("UPDATE orders", {}, Exception("database is locked"))

    monkeypatch.setattr(OrderRepository, "mark_paid_with_credential", broken_commit)
    with caplog.at_level(logging.INFO):
        result = harness.handle(_notification(event_id="evt_1"))

    assert result.outcome == "commit_failed"
    assert "tg_1" in fake_panel.users
    assert _order(session_factory).status == OrderStatus.PENDING
    assert harness.notifier.alerts and harness.notifier.alerts[0][1]["order_id"] == "ord_1"
    assert any(
        record.getMessage() == "billing.settlement.commit_failed" and record.levelno == logging.CRITICAL
        for record in caplog.records
    )

    monkeypatch.undo()
    assert harness.handle(_notification(event_id="evt_1")).outcome == "settled"
    assert _order(session_factory).status == OrderStatus.PAID


def test_cancel_for_another_payment_is_a_conflict(session_factory, fake_panel) -> None:
    _create_order(session_factory)
    harness = _Harness(session_factory, fake_panel)

    result = harness.handle(_notification("pay_other", event="payment.canceled", paid=False))

    assert result.outcome == "conflict"
    assert _order(session_factory).status == OrderStatus.PENDING
    assert harness.handle(_notification()).outcome == "settled"
