"""
Event deduplication by atomic claim.

Only the caller that gets CLAIMED applies state changes; every other
delivery of the same event id is acknowledged without reapplying effects.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from responsiai.core.errors import TransientStoreError
from responsiai.features.events.store import EventStore
from responsiai.models.event import ProcessedEventStatus

logger = logging.getLogger("responsiai.events")

CLAIM_ATTEMPTS = 3


class ClaimResult(str, Enum):
    CLAIMED = "claimed"
    ALREADY_PROCESSED = "already_processed"


class EventDeduplicator:
    def __init__(self, store: EventStore, claim_timeout_seconds: int = 600) -> None:
        self._store = store
        self._claim_timeout = timedelta(seconds=claim_timeout_seconds)

    def claim(self, event_id: str, event_type: str, now: Optional[datetime] = None) -> ClaimResult:
        """Atomically claim event_id for processing."""
        ts = now or datetime.now(timezone.utc)
        for _ in range(CLAIM_ATTEMPTS):
            if self._store.try_insert(event_id, event_type, ts):
                return ClaimResult.CLAIMED
            existing = self._store.get(event_id)
            if existing is not None:
                break
            # Holder released its claim between our insert and read
        else:
            raise TransientStoreError(f"claim for {event_id} kept racing with release")

        if (
            existing.status == ProcessedEventStatus.PROCESSING
            and ts - existing.claimed_at > self._claim_timeout
            and self._store.reclaim(event_id, existing.claimed_at, ts)
        ):
            logger.warning(
                "[dedup] reclaimed stale processing claim",
                extra={"event_id": event_id, "event_type": event_type},
            )
            return ClaimResult.CLAIMED
        return ClaimResult.ALREADY_PROCESSED

    def complete(self, event_id: str, outcome: str, now: Optional[datetime] = None) -> None:
        self._store.mark_processed(event_id, outcome, now or datetime.now(timezone.utc))

    def release(self, event_id: str) -> None:
        """Roll back a claim so the processor's redelivery can retry the event."""
        self._store.delete_claim(event_id)
