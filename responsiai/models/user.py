"""
responsiai/models/user.py

User account as seen by the billing core.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from responsiai.models.plan import PlanTier


class User(BaseModel):
    """
    A signed-up user.

    plan_tier is only changed by subscription lifecycle transitions;
    external_customer_id stays empty until the first completed checkout.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    display_name: Optional[str] = None
    plan_tier: PlanTier = PlanTier.FREE
    external_customer_id: Optional[str] = None
    created_at: Optional[datetime] = None
