"""
responsiai/features/usage/meter.py

Monthly analysis quota enforcement.

Flow on the analysis path:
    decision = meter.check_and_reserve(user_id)   # refuse if over quota
    ... do the analysis ...
    intents = meter.commit(user_id)               # only after success

Limits come from the user's current tier on every call, so a plan change
takes effect immediately. Warning thresholds fire exactly once per period.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from responsiai.core.errors import NotFoundError
from responsiai.core.retry import call_with_store_retry
from responsiai.features.subscriptions.repository import SubscriptionRepository
from responsiai.features.usage.ledger import UsageLedger
from responsiai.models.intent import Intent, IntentKind
from responsiai.models.plan import PlanTier, monthly_limit
from responsiai.models.usage import UsageDecision, UsageSnapshot, UsageStatus

logger = logging.getLogger("responsiai.usage")

THRESHOLD_PERCENTAGES = (80, 100)


def period_key_for(now: datetime, tz: str = "UTC") -> str:
    """Calendar month of `now` in timezone `tz`, formatted YYYY-MM."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(tz)).strftime("%Y-%m")


def threshold_count(limit: int, percentage: int) -> int:
    return math.ceil(limit * percentage / 100)


def crossed_thresholds(previous: int, new: int, limit: Optional[int]) -> List[int]:
    """Percentages whose unit count lies in (previous, new]."""
    if limit is None or limit <= 0:
        return []
    return [pct for pct in THRESHOLD_PERCENTAGES if previous < threshold_count(limit, pct) <= new]


class UsageMeter:
    def __init__(
        self,
        ledger: UsageLedger,
        repository: SubscriptionRepository,
        timezone_name: str = "UTC",
        retry_attempts: int = 3,
        retry_base_seconds: float = 0.2,
    ) -> None:
        self._ledger = ledger
        self._repository = repository
        self._tz = timezone_name
        self._attempts = retry_attempts
        self._base = retry_base_seconds

    def _call(self, fn, *args):
        return call_with_store_retry(fn, *args, attempts=self._attempts, base_seconds=self._base)

    def period_key(self, now: Optional[datetime] = None) -> str:
        return period_key_for(now or datetime.now(timezone.utc), self._tz)

    def _tier_and_limit(self, user_id: str) -> Tuple[PlanTier, Optional[int]]:
        user = self._call(self._repository.get_user, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user.plan_tier, monthly_limit(user.plan_tier)

    def check_and_reserve(self, user_id: str, now: Optional[datetime] = None) -> UsageDecision:
        """Decide whether one more analysis is allowed this period."""
        key = self.period_key(now)
        _tier, limit = self._tier_and_limit(user_id)
        record = self._call(self._ledger.ensure, user_id, key, limit)
        if limit is not None and record.count >= limit:
            logger.info(
                "[usage] limit exceeded",
                extra={"user_id": user_id, "outcome": "limit_exceeded"},
            )
            return UsageDecision(status=UsageStatus.LIMIT_EXCEEDED, count=record.count, limit=limit, period_key=key)
        return UsageDecision(status=UsageStatus.ALLOWED, count=record.count, limit=limit, period_key=key)

    def commit(self, user_id: str, now: Optional[datetime] = None) -> List[Intent]:
        """Record one completed analysis; returns threshold intents newly reached."""
        key = self.period_key(now)
        tier, limit = self._tier_and_limit(user_id)
        # Not retried: a failure after the UPDATE committed would count the analysis twice
        previous, new = self._ledger.increment(user_id, key, limit)

        intents: List[Intent] = []
        for pct in crossed_thresholds(previous, new, limit):
            if not self._call(self._ledger.raise_notified, user_id, key, pct):
                continue
            intents.append(
                Intent(
                    kind=IntentKind.USAGE_THRESHOLD_REACHED,
                    user_id=user_id,
                    payload={
                        "percentage": pct,
                        "count": new,
                        "limit": limit,
                        "period_key": key,
                        "plan_tier": tier.value,
                    },
                )
            )
        return intents

    def current_usage(self, user_id: str, now: Optional[datetime] = None) -> UsageSnapshot:
        key = self.period_key(now)
        _tier, limit = self._tier_and_limit(user_id)
        record = self._call(self._ledger.get, user_id, key)
        return UsageSnapshot(count=record.count if record else 0, limit=limit, period_key=key)
