"""
responsiai/models/usage.py

Period-scoped usage counters and meter results.
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class UsageRecord(BaseModel):
    """
    Analyses consumed by one user in one calendar month.

    count never decreases within a period. notified_threshold is the
    highest percentage already notified (0 = none).
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    period_key: str
    count: int = 0
    limit_snapshot: Optional[int] = None
    notified_threshold: int = 0


class UsageStatus(str, Enum):
    ALLOWED = "ALLOWED"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"


class UsageDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: UsageStatus
    count: int
    limit: Optional[int]
    period_key: str

    @property
    def allowed(self) -> bool:
        return self.status == UsageStatus.ALLOWED


class UsageSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    count: int
    limit: Optional[int]
    period_key: str
