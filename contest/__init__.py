from .db import init_contest_db
from .models import (
    Contest,
    ContestBase,
    LedgerReason,
    QualificationStatus,
    ReferralBinding,
    ReferralQualification,
    TicketLedgerEntry,
)
from .repository import ContestRepository
from .scheduler import AwardRetryScheduler, RetryEntry
from .service import (
    FIXED_PLAN_TICKETS,
    TICKET_REASON_LABELS,
    PaidOrderRef,
    TicketAwardService,
    build_ref_link,
    tickets_from_plan_id,
)

__all__ = [
    "ContestBase",
    "Contest",
    "ReferralBinding",
    "TicketLedgerEntry",
    "ReferralQualification",
    "LedgerReason",
    "QualificationStatus",
    "ContestRepository",
    "TicketAwardService",
    "PaidOrderRef",
    "FIXED_PLAN_TICKETS",
    "TICKET_REASON_LABELS",
    "tickets_from_plan_id",
    "build_ref_link",
    "AwardRetryScheduler",
    "RetryEntry",
    "init_contest_db",
]
