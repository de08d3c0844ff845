from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from config import DEFAULT_PLAN_DURATION_DAYS, PLANS, TRIAL_PLAN_ID
from observability import get_logger, log_event

_LOGGER = get_logger("subvpn.billing.plans")


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    days: int
    price_value: str
    currency: str = "RUB"
    trial: bool = False


DEFAULT_PLANS: tuple[Plan, ...] = (
    Plan(id="plan_7", name="7 days", days=7, price_value="10.00", trial=True),
    Plan(id="plan_30", name="1 month", days=30, price_value="599.00"),
    Plan(id="plan_90", name="3 months", days=90, price_value="1599.00"),
    Plan(id="plan_180", name="6 months", days=180, price_value="2999.00"),
    Plan(id="plan_365", name="1 year", days=365, price_value="5499.00"),
)


def _normalize_price(raw: Any) -> str:
    try:
        return str(Decimal(str(raw)).quantize(Decimal("0.01")))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"invalid plan price: {raw!r}") from exc


def _plan_from_config(item: dict[str, Any]) -> Plan:
    plan_id = str(item.get("id") or "").strip()
    if not plan_id:
        raise ValueError("plan entry is missing id")
    days = int(item.get("days") or 0)
    if days <= 0:
        raise ValueError(f"plan {plan_id} must have positive days")
    return Plan(
        id=plan_id,
        name=str(item.get("name") or plan_id).strip(),
        days=days,
        price_value=_normalize_price(item.get("price", item.get("price_value", "0"))),
        currency=str(item.get("currency") or "RUB").strip().upper(),
        trial=bool(item.get("trial", plan_id == TRIAL_PLAN_ID)),
    )


class PlanCatalog:
    def __init__(self, plans: Iterable[Plan], *, default_duration_days: int = DEFAULT_PLAN_DURATION_DAYS) -> None:
        self._plans = {plan.id: plan for plan in plans}
        self.default_duration_days = max(1, int(default_duration_days))

    def get(self, plan_id: str) -> Optional[Plan]:
        return self._plans.get(str(plan_id or "").strip())

    def list(self, *, include_trial: bool = True) -> list[Plan]:
        return [plan for plan in self._plans.values() if include_trial or not plan.trial]

    def duration_days(self, plan_id: str) -> int:
        plan = self.get(plan_id)
        if plan is not None:
            return plan.days
        # Unknown plans still get a working subscription rather than zero days.
        log_event(
            _LOGGER,
            logging.WARNING,
            "billing.plans.default_duration_used",
            plan_id=plan_id,
            duration_days=self.default_duration_days,
        )
        return self.default_duration_days


def load_plan_catalog(raw: Any = None) -> PlanCatalog:
    entries = PLANS if raw is None else raw
    if isinstance(entries, list) and entries:
        plans = [_plan_from_config(dict(item)) for item in entries if isinstance(item, dict)]
        return PlanCatalog(plans)
    return PlanCatalog(DEFAULT_PLANS)
