"""
responsiai/models/plan.py

Plan tiers and their monthly analysis quotas.
"""

from enum import Enum
from typing import Optional


class PlanTier(str, Enum):
    FREE = "free"
    PRO = "pro"
    UNLIMITED = "unlimited"


# Analyses per calendar month; None means no limit
PLAN_MONTHLY_LIMITS = {
    PlanTier.FREE: 10,
    PlanTier.PRO: 100,
    PlanTier.UNLIMITED: None,
}

PLAN_DISPLAY_NAMES = {
    PlanTier.FREE: "Free",
    PlanTier.PRO: "Pro",
    PlanTier.UNLIMITED: "Unlimited",
}


def monthly_limit(tier: PlanTier) -> Optional[int]:
    """Usage limit for a tier (None = unlimited)."""
    return PLAN_MONTHLY_LIMITS[PlanTier(tier)]


def parse_tier(value: Optional[str]) -> Optional[PlanTier]:
    """Lenient tier parsing for webhook metadata; returns None if unknown."""
    if not value:
        return None
    try:
        return PlanTier(str(value).strip().lower())
    except ValueError:
        return None
