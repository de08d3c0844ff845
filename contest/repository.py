from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from billing.db import as_utc_aware, clean_text

from .models import (
    Contest,
    LedgerReason,
    QualificationStatus,
    ReferralBinding,
    ReferralQualification,
    TicketLedgerEntry,
)


class ContestRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    # ------------------------------------------------------------------
    # Contests
    # ------------------------------------------------------------------
    def create_contest(
        self,
        *,
        title: str,
        starts_at: datetime,
        ends_at: datetime,
        attribution_window_days: int = 7,
        rules_version: str = "v1",
        is_active: bool = True,
        contest_id: Optional[str] = None,
    ) -> Contest:
        start = as_utc_aware(starts_at)
        end = as_utc_aware(ends_at)
        if end <= start:
            raise ValueError("contest must end after it starts")
        contest = Contest(
            title=clean_text(title) or "Contest",
            starts_at=start,
            ends_at=end,
            attribution_window_days=max(0, int(attribution_window_days)),
            rules_version=clean_text(rules_version) or "v1",
            is_active=bool(is_active),
        )
        if contest_id:
            contest.id = clean_text(contest_id)
        self.session.add(contest)
        self.session.flush()
        return contest

    def get_contest(self, contest_id: str) -> Optional[Contest]:
        normalized = clean_text(contest_id)
        if not normalized:
            return None
        return self.session.get(Contest, normalized)

    def get_active_contest(self, now: datetime) -> Optional[Contest]:
        current = as_utc_aware(now)
        query = (
            select(Contest)
            .where(Contest.is_active.is_(True), Contest.starts_at <= current, Contest.ends_at >= current)
            .order_by(Contest.starts_at.desc())
            .limit(1)
        )
        return self.session.scalar(query)

    # ------------------------------------------------------------------
    # Referral bindings and qualification
    # ------------------------------------------------------------------
    def get_referral_binding(self, referred_id: str) -> Optional[ReferralBinding]:
        normalized = clean_text(referred_id)
        if not normalized:
            return None
        return self.session.scalar(select(ReferralBinding).where(ReferralBinding.referred_id == normalized))

    def bind_referral(
        self,
        *,
        referrer_id: str,
        referred_id: str,
        bound_at: Optional[datetime] = None,
    ) -> ReferralBinding:
        existing = self.get_referral_binding(referred_id)
        if existing is not None:
            # Bindings are immutable once created.
            return existing
        current = as_utc_aware(bound_at) if bound_at else datetime.now(timezone.utc)
        binding = ReferralBinding(referrer_id=clean_text(referrer_id), referred_id=clean_text(referred_id), bound_at=current)
        self.session.add(binding)
        self.session.flush()
        contest = self.get_active_contest(current)
        if contest is not None and binding.referrer_id != binding.referred_id:
            self.upsert_qualification(
                contest_id=contest.id,
                referrer_id=binding.referrer_id,
                referred_id=binding.referred_id,
                status=QualificationStatus.BOUND,
                bound_at=current,
                now=current,
            )
        return binding

    def upsert_qualification(
        self,
        *,
        contest_id: str,
        referrer_id: str,
        referred_id: str,
        status: QualificationStatus,
        bound_at: datetime,
        now: datetime,
        reason: Optional[str] = None,
    ) -> ReferralQualification:
        row = self.session.scalar(
            select(ReferralQualification).where(
                ReferralQualification.contest_id == contest_id,
                ReferralQualification.referrer_id == referrer_id,
                ReferralQualification.referred_id == referred_id,
            )
        )
        current = as_utc_aware(now)
        if row is None:
            row = ReferralQualification(
                contest_id=contest_id,
                referrer_id=referrer_id,
                referred_id=referred_id,
                bound_at=as_utc_aware(bound_at),
            )
            self.session.add(row)
        elif row.status == QualificationStatus.QUALIFIED and status != QualificationStatus.QUALIFIED:
            # A qualified referral stays qualified; later orders cannot undo it.
            return row
        row.status = status
        row.status_reason = reason
        row.updated_at = current
        if status == QualificationStatus.QUALIFIED and row.qualified_at is None:
            row.qualified_at = current
        self.session.flush()
        return row

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------
    def has_ledger_entry(self, order_id: str, reason: Optional[LedgerReason] = None) -> bool:
        query = select(func.count(TicketLedgerEntry.id)).where(TicketLedgerEntry.order_id == clean_text(order_id))
        if reason is not None:
            query = query.where(TicketLedgerEntry.reason == reason)
        return int(self.session.scalar(query) or 0) > 0

    def ledger_entries_for_order(self, order_id: str) -> list[TicketLedgerEntry]:
        query = (
            select(TicketLedgerEntry)
            .where(TicketLedgerEntry.order_id == clean_text(order_id))
            .order_by(TicketLedgerEntry.created_at.asc())
        )
        return list(self.session.scalars(query).all())

    def orders_with_self_purchase(self, order_ids: Iterable[str]) -> set[str]:
        ids = [clean_text(item) for item in order_ids if clean_text(item)]
        if not ids:
            return set()
        query = select(TicketLedgerEntry.order_id).where(
            TicketLedgerEntry.order_id.in_(ids),
            TicketLedgerEntry.reason == LedgerReason.SELF_PURCHASE,
        )
        return set(self.session.scalars(query).all())

    def add_ledger_entry(
        self,
        *,
        contest_id: str,
        referrer_id: str,
        referred_id: str,
        order_id: str,
        delta: int,
        reason: LedgerReason,
        now: datetime,
    ) -> TicketLedgerEntry:
        entry = TicketLedgerEntry(
            contest_id=contest_id,
            referrer_id=referrer_id,
            referred_id=referred_id,
            order_id=order_id,
            delta=int(delta),
            reason=reason,
            created_at=as_utc_aware(now),
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------
    def _tickets_by_party(self, contest_id: str):
        return (
            select(
                TicketLedgerEntry.referrer_id.label("party_id"),
                func.coalesce(func.sum(TicketLedgerEntry.delta), 0).label("tickets_total"),
                func.count(func.distinct(TicketLedgerEntry.order_id)).label("orders_total"),
            )
            .where(TicketLedgerEntry.contest_id == contest_id)
            .group_by(TicketLedgerEntry.referrer_id)
        )

    def referral_summary(self, user_ref: str, contest_id: str) -> dict[str, Any]:
        party = clean_text(user_ref)
        counts = self.session.execute(
            select(ReferralQualification.status, func.count(ReferralQualification.id))
            .where(ReferralQualification.contest_id == contest_id, ReferralQualification.referrer_id == party)
            .group_by(ReferralQualification.status)
        ).all()
        by_status = {status: int(count) for status, count in counts}
        invited_total = sum(by_status.values())
        qualified_total = by_status.get(QualificationStatus.QUALIFIED, 0)

        totals = {row.party_id: int(row.tickets_total) for row in self.session.execute(self._tickets_by_party(contest_id))}
        tickets_total = totals.get(party, 0)
        total_participants = len(totals)
        rank: Optional[int] = None
        if total_participants:
            if tickets_total <= 0:
                rank = total_participants
            else:
                rank = 1 + sum(1 for value in totals.values() if value > tickets_total)
        return {
            "tickets_total": tickets_total,
            "invited_total": invited_total,
            "qualified_total": qualified_total,
            "pending_total": by_status.get(QualificationStatus.BOUND, 0),
            "rank": rank,
            "total_participants": total_participants,
        }

    def referral_friends(self, user_ref: str, contest_id: str, limit: int = 50) -> list[dict[str, Any]]:
        party = clean_text(user_ref)
        tickets = func.coalesce(func.sum(TicketLedgerEntry.delta), 0)
        query = (
            select(ReferralQualification, tickets.label("tickets_from_friend_total"))
            .outerjoin(
                TicketLedgerEntry,
                and_(
                    TicketLedgerEntry.contest_id == ReferralQualification.contest_id,
                    TicketLedgerEntry.referrer_id == ReferralQualification.referrer_id,
                    TicketLedgerEntry.referred_id == ReferralQualification.referred_id,
                    TicketLedgerEntry.reason == LedgerReason.INVITEE_PAYMENT,
                ),
            )
            .where(ReferralQualification.contest_id == contest_id, ReferralQualification.referrer_id == party)
            .group_by(ReferralQualification.id)
            .order_by(ReferralQualification.bound_at.desc())
            .limit(max(1, min(int(limit), 200)))
        )
        friends: list[dict[str, Any]] = []
        for row, tickets_total in self.session.execute(query).all():
            friends.append(
                {
                    "id": row.id,
                    "referred_id": row.referred_id,
                    "status": row.status.value,
                    "status_reason": row.status_reason,
                    "tickets_from_friend_total": int(tickets_total or 0),
                    "bound_at": as_utc_aware(row.bound_at).isoformat(),
                }
            )
        return friends

    def ticket_history(self, user_ref: str, contest_id: str, limit: int = 50) -> list[TicketLedgerEntry]:
        query = (
            select(TicketLedgerEntry)
            .where(TicketLedgerEntry.contest_id == contest_id, TicketLedgerEntry.referrer_id == clean_text(user_ref))
            .order_by(TicketLedgerEntry.created_at.desc())
            .limit(max(1, min(int(limit), 200)))
        )
        return list(self.session.scalars(query).all())

    def contest_participants(self, contest_id: str) -> list[dict[str, Any]]:
        rows = sorted(
            self.session.execute(self._tickets_by_party(contest_id)).all(),
            key=lambda row: (-int(row.tickets_total), str(row.party_id)),
        )
        participants: list[dict[str, Any]] = []
        previous_total: Optional[int] = None
        rank = 0
        for position, row in enumerate(rows, start=1):
            total = int(row.tickets_total)
            if total != previous_total:
                rank = position
                previous_total = total
            participants.append(
                {
                    "rank": rank,
                    "user_ref": row.party_id,
                    "tickets_total": total,
                    "orders_total": int(row.orders_total),
                }
            )
        return participants
