"""
responsiai/models/subscription.py

Subscription lifecycle state.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from responsiai.models.plan import PlanTier


class SubscriptionStatus(str, Enum):
    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class Subscription(BaseModel):
    """
    One processor subscription owned by a user.

    Canceled subscriptions are terminal and kept for history; a new
    checkout creates a new row. `version` is bumped on every write and
    used for optimistic compare-and-set in the repository.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    external_subscription_id: str
    status: SubscriptionStatus = SubscriptionStatus.NONE
    cancel_at_period_end: bool = False
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    plan_tier: PlanTier = PlanTier.FREE
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.status != SubscriptionStatus.CANCELED
