from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy.engine import Engine

from billing import (
    BasePaymentGateway,
    OrderRepository,
    PlanCatalog,
    SettlementPipeline,
    TelegramNotifier,
    build_session_factory,
    get_payment_gateway,
    init_billing_db,
    load_plan_catalog,
    session_scope,
)
from billing.db import SessionFactory
from config import (
    AWARD_RECOVERY_SCAN_ENABLED,
    AWARD_RETRY_INTERVAL_SECONDS,
    AWARD_RETRY_MAX_ATTEMPTS,
    AWARD_SCHEDULER_ENABLED,
    CONTEST_DATABASE_URL,
    DATABASE_URL,
    MARZBAN_API_URL,
    MARZBAN_PASSWORD,
    MARZBAN_TIMEOUT_SECONDS,
    MARZBAN_USERNAME,
)
from contest import AwardRetryScheduler, PaidOrderRef, TicketAwardService, init_contest_db
from observability import get_logger, log_event
from vpn import MarzbanClient, VpnProvisioningService

_LOGGER = get_logger("subvpn.app")


@dataclass
class AppServices:
    """Everything a request handler needs, built once per process by the lifespan."""

    billing_engine: Engine
    billing_sessions: SessionFactory
    contest_engine: Engine
    contest_sessions: SessionFactory
    plans: PlanCatalog
    gateway: BasePaymentGateway
    panel: MarzbanClient
    provisioning: VpnProvisioningService
    notifier: TelegramNotifier
    awards: TicketAwardService
    retry_scheduler: AwardRetryScheduler
    pipeline: SettlementPipeline
    scheduler_enabled: bool = True

    def init_schema(self) -> None:
        init_billing_db(self.billing_engine)
        init_contest_db(self.contest_engine)

    def start(self) -> None:
        if self.scheduler_enabled:
            self.retry_scheduler.start()

    async def aclose(self) -> None:
        self.retry_scheduler.stop()
        await self.panel.aclose()
        self.billing_engine.dispose()
        if self.contest_engine is not self.billing_engine:
            self.contest_engine.dispose()
        log_event(_LOGGER, logging.INFO, "app.services.closed")


def _has_paid_before(billing_sessions: SessionFactory):
    def check(user_ref: str, before: datetime) -> bool:
        with session_scope(billing_sessions) as session:
            return OrderRepository(session).has_completed_payment(user_ref, before=before)

    return check


def _paid_orders(billing_sessions: SessionFactory, *, page_size: int = 500):
    def fetch(created_from: datetime, created_to: datetime) -> Iterator[PaidOrderRef]:
        after: Optional[tuple[datetime, str]] = None
        while True:
            with session_scope(billing_sessions) as session:
                page = OrderRepository(session).list_paid_orders(
                    created_from=created_from,
                    created_to=created_to,
                    after=after,
                    limit=page_size,
                )
                refs = [
                    PaidOrderRef(
                        order_id=order.id,
                        user_ref=order.user_ref or "",
                        plan_id=order.plan_id,
                        created_at=order.created_at,
                    )
                    for order in page
                ]
            yield from refs
            if len(refs) < page_size:
                return
            after = (refs[-1].created_at, refs[-1].order_id)

    return fetch


def build_services(
    *,
    database_url: str = DATABASE_URL,
    contest_database_url: Optional[str] = CONTEST_DATABASE_URL,
    gateway: Optional[BasePaymentGateway] = None,
    panel: Optional[MarzbanClient] = None,
    notifier: Optional[TelegramNotifier] = None,
    plans: Optional[PlanCatalog] = None,
    scheduler_enabled: bool = AWARD_SCHEDULER_ENABLED,
    recovery_enabled: bool = AWARD_RECOVERY_SCAN_ENABLED,
) -> AppServices:
    billing_engine, billing_sessions = build_session_factory(database_url)
    if not contest_database_url or contest_database_url == database_url:
        contest_engine, contest_sessions = billing_engine, billing_sessions
    else:
        contest_engine, contest_sessions = build_session_factory(contest_database_url)

    plans = plans or load_plan_catalog()
    gateway = gateway or get_payment_gateway()
    panel = panel or MarzbanClient(
        MARZBAN_API_URL,
        MARZBAN_USERNAME,
        MARZBAN_PASSWORD,
        timeout_seconds=MARZBAN_TIMEOUT_SECONDS,
    )
    provisioning = VpnProvisioningService(panel)
    notifier = notifier or TelegramNotifier()

    awards = TicketAwardService(
        session_factory=contest_sessions,
        payment_history=_has_paid_before(billing_sessions),
    )
    paid_orders = _paid_orders(billing_sessions)
    retry_scheduler = AwardRetryScheduler(
        awards.award_tickets_for_payment,
        interval_seconds=AWARD_RETRY_INTERVAL_SECONDS,
        max_attempts=AWARD_RETRY_MAX_ATTEMPTS,
        recovery=(lambda: awards.award_missing(paid_orders)) if recovery_enabled else None,
    )
    pipeline = SettlementPipeline(
        session_factory=billing_sessions,
        plans=plans,
        provisioning=provisioning,
        award=awards.award_tickets_for_payment,
        enqueue_retry=retry_scheduler.enqueue,
        notifier=notifier,
    )
    return AppServices(
        billing_engine=billing_engine,
        billing_sessions=billing_sessions,
        contest_engine=contest_engine,
        contest_sessions=contest_sessions,
        plans=plans,
        gateway=gateway,
        panel=panel,
        provisioning=provisioning,
        notifier=notifier,
        awards=awards,
        retry_scheduler=retry_scheduler,
        pipeline=pipeline,
        scheduler_enabled=scheduler_enabled,
    )


def paid_orders_source(services: AppServices):
    return _paid_orders(services.billing_sessions)
