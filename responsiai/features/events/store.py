"""
Processed-event store (webhook idempotency log).

Two implementations of the EventStore protocol:
- SqlEventStore: unique primary key on event_id, IntegrityError = already present
- InMemoryEventStore: dict guarded by a lock (tests, no DATABASE_URL)
"""
from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, Optional, Protocol

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from responsiai.core.database import as_utc, processed_events, session_scope, store_errors
from responsiai.models.event import ProcessedEvent, ProcessedEventStatus


class EventStore(Protocol):
    def try_insert(self, event_id: str, event_type: str, claimed_at: datetime) -> bool:
        """Insert a processing claim; False if the event id already exists."""
        ...

    def get(self, event_id: str) -> Optional[ProcessedEvent]:
        ...

    def reclaim(self, event_id: str, expected_claimed_at: datetime, claimed_at: datetime) -> bool:
        """Compare-and-set a stale processing claim to a new claim time."""
        ...

    def mark_processed(self, event_id: str, outcome: str, processed_at: datetime) -> None:
        ...

    def delete_claim(self, event_id: str) -> None:
        """Remove a processing claim (never a processed row)."""
        ...

    def prune(self, older_than: datetime) -> int:
        """Delete processed rows finalized before older_than; returns count."""
        ...


class InMemoryEventStore:
    """In-memory EventStore."""

    def __init__(self) -> None:
        self._rows: Dict[str, ProcessedEvent] = {}
        self._lock = threading.Lock()

    def try_insert(self, event_id: str, event_type: str, claimed_at: datetime) -> bool:
        with self._lock:
            if event_id in self._rows:
                return False
            self._rows[event_id] = ProcessedEvent(
                event_id=event_id,
                event_type=event_type,
                status=ProcessedEventStatus.PROCESSING,
                claimed_at=claimed_at,
            )
            return True

    def get(self, event_id: str) -> Optional[ProcessedEvent]:
        with self._lock:
            return self._rows.get(event_id)

    def reclaim(self, event_id: str, expected_claimed_at: datetime, claimed_at: datetime) -> bool:
        with self._lock:
            row = self._rows.get(event_id)
            if (
                row is None
                or row.status != ProcessedEventStatus.PROCESSING
                or row.claimed_at != expected_claimed_at
            ):
                return False
            self._rows[event_id] = row.model_copy(update={"claimed_at": claimed_at})
            return True

    def mark_processed(self, event_id: str, outcome: str, processed_at: datetime) -> None:
        with self._lock:
            row = self._rows.get(event_id)
            if row is None or row.status == ProcessedEventStatus.PROCESSED:
                return
            self._rows[event_id] = row.model_copy(
                update={
                    "status": ProcessedEventStatus.PROCESSED,
                    "outcome": outcome,
                    "processed_at": processed_at,
                }
            )

    def delete_claim(self, event_id: str) -> None:
        with self._lock:
            row = self._rows.get(event_id)
            if row is not None and row.status == ProcessedEventStatus.PROCESSING:
                del self._rows[event_id]

    def prune(self, older_than: datetime) -> int:
        with self._lock:
            stale = [
                key
                for key, row in self._rows.items()
                if row.status == ProcessedEventStatus.PROCESSED
                and row.processed_at is not None
                and row.processed_at < older_than
            ]
            for key in stale:
                del self._rows[key]
            return len(stale)


class SqlEventStore:
    """EventStore backed by the processed_events table."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def try_insert(self, event_id: str, event_type: str, claimed_at: datetime) -> bool:
        with store_errors("processed_events.insert"):
            try:
                with session_scope(self._engine) as session:
                    session.execute(
                        insert(processed_events).values(
                            event_id=event_id,
                            event_type=event_type,
                            status=ProcessedEventStatus.PROCESSING.value,
                            claimed_at=claimed_at,
                        )
                    )
            except IntegrityError:
                # Another delivery already claimed this event
                return False
        return True

    def get(self, event_id: str) -> Optional[ProcessedEvent]:
        with store_errors("processed_events.get"):
            with session_scope(self._engine) as session:
                row = session.execute(
                    select(processed_events).where(processed_events.c.event_id == event_id)
                ).fetchone()
        if row is None:
            return None
        return ProcessedEvent(
            event_id=row.event_id,
            event_type=row.event_type,
            status=ProcessedEventStatus(row.status),
            claimed_at=as_utc(row.claimed_at),
            processed_at=as_utc(row.processed_at),
            outcome=row.outcome,
        )

    def reclaim(self, event_id: str, expected_claimed_at: datetime, claimed_at: datetime) -> bool:
        with store_errors("processed_events.reclaim"):
            with session_scope(self._engine) as session:
                result = session.execute(
                    update(processed_events)
                    .where(processed_events.c.event_id == event_id)
                    .where(processed_events.c.status == ProcessedEventStatus.PROCESSING.value)
                    .where(processed_events.c.claimed_at == expected_claimed_at)
                    .values(claimed_at=claimed_at)
                )
                return result.rowcount == 1

    def mark_processed(self, event_id: str, outcome: str, processed_at: datetime) -> None:
        with store_errors("processed_events.mark_processed"):
            with session_scope(self._engine) as session:
                session.execute(
                    update(processed_events)
                    .where(processed_events.c.event_id == event_id)
                    .where(processed_events.c.status == ProcessedEventStatus.PROCESSING.value)
                    .values(
                        status=ProcessedEventStatus.PROCESSED.value,
                        outcome=outcome[:200],
                        processed_at=processed_at,
                    )
                )

    def delete_claim(self, event_id: str) -> None:
        with store_errors("processed_events.delete_claim"):
            with session_scope(self._engine) as session:
                session.execute(
                    delete(processed_events)
                    .where(processed_events.c.event_id == event_id)
                    .where(processed_events.c.status == ProcessedEventStatus.PROCESSING.value)
                )

    def prune(self, older_than: datetime) -> int:
        with store_errors("processed_events.prune"):
            with session_scope(self._engine) as session:
                result = session.execute(
                    delete(processed_events)
                    .where(processed_events.c.status == ProcessedEventStatus.PROCESSED.value)
                    .where(processed_events.c.processed_at < older_than)
                )
                return result.rowcount or 0
