from __future__ import annotations

import itertools
import logging
import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy.exc import IntegrityError

from billing.db import SessionFactory, as_utc_aware, session_scope
from observability import get_logger, log_event
from runtime_metrics import record_counter_metric

from .models import LedgerReason, QualificationStatus
from .repository import ContestRepository

_LOGGER = get_logger("subvpn.contest.service")

FIXED_PLAN_TICKETS: dict[str, int] = {
    "plan_30": 1,
    "plan_90": 3,
    "plan_180": 6,
    "plan_365": 12,
}
_DYNAMIC_PLAN_RE = re.compile(r"^plan_(\d+)$")
_RECOVERY_BATCH_SIZE = 500

TICKET_REASON_LABELS: dict[LedgerReason, str] = {
    LedgerReason.SELF_PURCHASE: "Own purchase",
    LedgerReason.INVITEE_PAYMENT: "Invited friend's payment",
}


def tickets_from_plan_id(plan_id: Optional[str]) -> int:
    normalized = str(plan_id or "").strip()
    if normalized in FIXED_PLAN_TICKETS:
        return FIXED_PLAN_TICKETS[normalized]
    match = _DYNAMIC_PLAN_RE.match(normalized)
    if not match:
        return 0
    days = int(match.group(1))
    if days <= 0:
        return 0
    return math.ceil(days / 30)


def build_ref_link(bot_username: str, telegram_id: int) -> str:
    return f"https://t.me/{bot_username.lstrip('@')}?start=REF{telegram_id}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PaidOrderRef:
    order_id: str
    user_ref: str
    plan_id: str
    created_at: datetime


@dataclass(frozen=True)
class _ContestWindow:
    id: str
    starts_at: datetime
    ends_at: datetime
    attribution_window_days: int


@dataclass(frozen=True)
class _Binding:
    referrer_id: str
    bound_at: datetime


PaymentHistory = Callable[[str, datetime], bool]


class TicketAwardService:
    """
    Awards contest tickets for a settled order.

    All ledger rows and the qualification record for one order are written in a
    single transaction. The prior-payment lookup goes to the billing store
    before that transaction opens, so no session is held across the two stores.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        payment_history: PaymentHistory,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._payment_history = payment_history
        self._clock = clock

    def active_contest_window(self, now: Optional[datetime] = None) -> Optional[_ContestWindow]:
        with session_scope(self._session_factory) as session:
            contest = ContestRepository(session).get_active_contest(now or self._clock())
            if contest is None:
                return None
            return _ContestWindow(
                id=contest.id,
                starts_at=as_utc_aware(contest.starts_at),
                ends_at=as_utc_aware(contest.ends_at),
                attribution_window_days=int(contest.attribution_window_days or 0),
            )

    def _skip(self, reason: str, **fields) -> bool:
        log_event(_LOGGER, logging.INFO, "contest.award.skipped", reason=reason, **fields)
        return False

    def award_tickets_for_payment(
        self,
        referred_user_ref: str,
        order_id: str,
        plan_id: str,
        order_created_at: datetime,
    ) -> bool:
        payer = str(referred_user_ref or "").strip()
        order = str(order_id or "").strip()
        if not payer or not order:
            raise ValueError("referred_user_ref and order_id are required")
        created_at = as_utc_aware(order_created_at)

        contest = self.active_contest_window()
        if contest is None:
            return self._skip("no_active_contest", order_id=order)
        if not (contest.starts_at <= created_at <= contest.ends_at):
            return self._skip("outside_contest_period", order_id=order, contest_id=contest.id)
        tickets = tickets_from_plan_id(plan_id)
        if tickets <= 0:
            return self._skip("plan_not_ticketed", order_id=order, plan_id=plan_id)

        with session_scope(self._session_factory) as session:
            repo = ContestRepository(session)
            if repo.has_ledger_entry(order, LedgerReason.SELF_PURCHASE):
                return True
            row = repo.get_referral_binding(payer)
            binding = _Binding(row.referrer_id, as_utc_aware(row.bound_at)) if row is not None else None

        referrer_status: Optional[QualificationStatus] = None
        status_reason: Optional[str] = None
        if binding is not None and binding.referrer_id != payer:
            window_end = binding.bound_at + timedelta(days=contest.attribution_window_days)
            if created_at > window_end:
                referrer_status = QualificationStatus.NOT_QUALIFIED
                status_reason = "attribution_window_expired"
            elif self._payment_history(payer, binding.bound_at):
                referrer_status = QualificationStatus.BLOCKED
                status_reason = "paid_before_referral"
            else:
                referrer_status = QualificationStatus.QUALIFIED

        try:
            with session_scope(self._session_factory) as session:
                repo = ContestRepository(session)
                if repo.has_ledger_entry(order, LedgerReason.SELF_PURCHASE):
                    return True
                now = self._clock()
                repo.add_ledger_entry(
                    contest_id=contest.id,
                    referrer_id=payer,
                    referred_id=payer,
                    order_id=order,
                    delta=tickets,
                    reason=LedgerReason.SELF_PURCHASE,
                    now=now,
                )
                if binding is not None and referrer_status is not None:
                    if referrer_status == QualificationStatus.QUALIFIED:
                        repo.add_ledger_entry(
                            contest_id=contest.id,
                            referrer_id=binding.referrer_id,
                            referred_id=payer,
                            order_id=order,
                            delta=tickets,
                            reason=LedgerReason.INVITEE_PAYMENT,
                            now=now,
                        )
                    repo.upsert_qualification(
                        contest_id=contest.id,
                        referrer_id=binding.referrer_id,
                        referred_id=payer,
                        status=referrer_status,
                        bound_at=binding.bound_at,
                        now=now,
                        reason=status_reason,
                    )
        except IntegrityError:
            # A concurrent award for the same order won the unique constraint.
            with session_scope(self._session_factory) as session:
                if ContestRepository(session).has_ledger_entry(order, LedgerReason.SELF_PURCHASE):
                    return True
            raise

        record_counter_metric(name="contest.tickets.awarded", value=tickets)
        log_event(
            _LOGGER,
            logging.INFO,
            "contest.award.committed",
            order_id=order,
            contest_id=contest.id,
            user_ref=payer,
            tickets=tickets,
            referrer_id=binding.referrer_id if binding is not None else None,
            referrer_status=referrer_status,
            status_reason=status_reason,
        )
        return True

    def award_missing(self, paid_orders: Callable[[datetime, datetime], Iterable[PaidOrderRef]]) -> int:
        """Re-award paid orders from the active contest window that have no self-purchase row."""

        contest = self.active_contest_window()
        if contest is None:
            return 0
        candidates = (
            item
            for item in paid_orders(contest.starts_at, contest.ends_at)
            if item.user_ref and tickets_from_plan_id(item.plan_id) > 0
        )
        recovered = 0
        while True:
            batch = list(itertools.islice(candidates, _RECOVERY_BATCH_SIZE))
            if not batch:
                break
            with session_scope(self._session_factory) as session:
                awarded = ContestRepository(session).orders_with_self_purchase(item.order_id for item in batch)
            for item in batch:
                if item.order_id in awarded:
                    continue
                try:
                    if self.award_tickets_for_payment(item.user_ref, item.order_id, item.plan_id, item.created_at):
                        recovered += 1
                except Exception as exc:  # noqa: BLE001
                    log_event(
                        _LOGGER,
                        logging.WARNING,
                        "contest.recovery.failed",
                        order_id=item.order_id,
                        error=str(exc),
                    )
        if recovered:
            log_event(_LOGGER, logging.INFO, "contest.recovery.awarded", contest_id=contest.id, recovered=recovered)
        return recovered
