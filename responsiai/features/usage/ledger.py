"""
Usage ledger: period-scoped analysis counters.

All mutations are single-row atomic statements so concurrent requests for
the same user never lose an increment and a threshold is marked notified
by exactly one caller.
"""
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol, Tuple

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from responsiai.core.database import session_scope, store_errors, usage_records
from responsiai.models.usage import UsageRecord


class UsageLedger(Protocol):
    def get(self, user_id: str, period_key: str) -> Optional[UsageRecord]:
        ...

    def ensure(self, user_id: str, period_key: str, limit: Optional[int]) -> UsageRecord:
        """Return the period record, creating it with count 0 if absent."""
        ...

    def increment(self, user_id: str, period_key: str, limit: Optional[int]) -> Tuple[int, int]:
        """Add one unit; returns (previous_count, new_count)."""
        ...

    def raise_notified(self, user_id: str, period_key: str, threshold: int) -> bool:
        """Set notified_threshold to threshold if it is currently lower."""
        ...


class InMemoryUsageLedger:
    """In-memory UsageLedger."""

    def __init__(self) -> None:
        self._records: Dict[Tuple[str, str], UsageRecord] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str, period_key: str) -> Optional[UsageRecord]:
        with self._lock:
            return self._records.get((user_id, period_key))

    def ensure(self, user_id: str, period_key: str, limit: Optional[int]) -> UsageRecord:
        with self._lock:
            key = (user_id, period_key)
            if key not in self._records:
                self._records[key] = UsageRecord(user_id=user_id, period_key=period_key, limit_snapshot=limit)
            return self._records[key]

    def increment(self, user_id: str, period_key: str, limit: Optional[int]) -> Tuple[int, int]:
        with self._lock:
            key = (user_id, period_key)
            record = self._records.get(key) or UsageRecord(user_id=user_id, period_key=period_key)
            self._records[key] = record.model_copy(update={"count": record.count + 1, "limit_snapshot": limit})
            return record.count, record.count + 1

    def raise_notified(self, user_id: str, period_key: str, threshold: int) -> bool:
        with self._lock:
            key = (user_id, period_key)
            record = self._records.get(key)
            if record is None or record.notified_threshold >= threshold:
                return False
            self._records[key] = record.model_copy(update={"notified_threshold": threshold})
            return True


def _record_from_row(row) -> UsageRecord:
    return UsageRecord(
        user_id=row.user_id,
        period_key=row.period_key,
        count=row.count,
        limit_snapshot=row.limit_snapshot,
        notified_threshold=row.notified_threshold,
    )


class SqlUsageLedger:
    """UsageLedger backed by the usage_records table."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _where(self, stmt, user_id: str, period_key: str):
        return stmt.where(usage_records.c.user_id == user_id).where(usage_records.c.period_key == period_key)

    def _insert_if_absent(self, user_id: str, period_key: str, limit: Optional[int]) -> None:
        now = datetime.now(timezone.utc)
        try:
            with session_scope(self._engine) as session:
                session.execute(
                    insert(usage_records).values(
                        user_id=user_id,
                        period_key=period_key,
                        count=0,
                        limit_snapshot=limit,
                        notified_threshold=0,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError:
            # Row already exists for this period
            pass

    def get(self, user_id: str, period_key: str) -> Optional[UsageRecord]:
        with store_errors("usage_records.get"):
            with session_scope(self._engine) as session:
                row = session.execute(self._where(select(usage_records), user_id, period_key)).fetchone()
        return _record_from_row(row) if row else None

    def ensure(self, user_id: str, period_key: str, limit: Optional[int]) -> UsageRecord:
        existing = self.get(user_id, period_key)
        if existing is not None:
            return existing
        with store_errors("usage_records.ensure"):
            self._insert_if_absent(user_id, period_key, limit)
        return self.get(user_id, period_key)

    def increment(self, user_id: str, period_key: str, limit: Optional[int]) -> Tuple[int, int]:
        with store_errors("usage_records.increment"):
            self._insert_if_absent(user_id, period_key, limit)
            with session_scope(self._engine) as session:
                # The UPDATE takes the row lock; the read below sees our own write
                session.execute(
                    self._where(update(usage_records), user_id, period_key).values(
                        count=usage_records.c.count + 1,
                        limit_snapshot=limit,
                        updated_at=datetime.now(timezone.utc),
                    )
                )
                new_count = session.execute(
                    self._where(select(usage_records.c.count), user_id, period_key)
                ).scalar_one()
        return new_count - 1, new_count

    def raise_notified(self, user_id: str, period_key: str, threshold: int) -> bool:
        with store_errors("usage_records.raise_notified"):
            with session_scope(self._engine) as session:
                result = session.execute(
                    self._where(update(usage_records), user_id, period_key)
                    .where(usage_records.c.notified_threshold < threshold)
                    .values(notified_threshold=threshold, updated_at=datetime.now(timezone.utc))
                )
                return result.rowcount == 1
