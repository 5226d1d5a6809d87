from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

STARTER = "starter"
PRO = "pro"
BUSINESS = "business"

SUBSCRIPTION_PLANS = (STARTER, PRO, BUSINESS)


@dataclass(frozen=True)
class Limited:
    documents_per_month: int


@dataclass(frozen=True)
class Unlimited:
    pass


PlanLimit = Union[Limited, Unlimited]

PLAN_LIMITS: dict[str, PlanLimit] = {
    STARTER: Limited(10),
    PRO: Limited(50),
    BUSINESS: Unlimited(),
}

# Monthly price in whole currency units, for display only.
PLAN_PRICES: dict[str, int] = {
    STARTER: 0,
    PRO: 19,
    BUSINESS: 49,
}


def normalize_plan(plan: Optional[str]) -> str:
    plan = (plan or "").strip().lower()
    return plan if plan in PLAN_LIMITS else STARTER


def limit_for_plan(plan: Optional[str]) -> PlanLimit:
    return PLAN_LIMITS[normalize_plan(plan)]


def ceiling(plan: Optional[str]) -> Optional[int]:
    """Numeric ceiling, or None when the plan has no ceiling."""
    limit = limit_for_plan(plan)
    if isinstance(limit, Unlimited):
        return None
    return limit.documents_per_month


def is_allowed(plan: Optional[str], documents_used: int) -> bool:
    limit = limit_for_plan(plan)
    if isinstance(limit, Unlimited):
        return True
    return documents_used < limit.documents_per_month


def remaining(plan: Optional[str], documents_used: int) -> Optional[int]:
    limit = limit_for_plan(plan)
    if isinstance(limit, Unlimited):
        return None
    return max(limit.documents_per_month - documents_used, 0)
