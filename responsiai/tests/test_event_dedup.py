"""
Test event deduplication (atomic claim) against both event stores.
"""
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine

from responsiai.core.database import create_all_tables
from responsiai.core.errors import TransientStoreError
from responsiai.features.events.dedup import ClaimResult, EventDeduplicator
from responsiai.features.events.store import InMemoryEventStore, SqlEventStore
from responsiai.models.event import ProcessedEventStatus

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        return InMemoryEventStore()
    return SqlEventStore(request.getfixturevalue("sqlite_engine"))


def test_first_claim_wins_second_is_already_processed(store):
    dedup = EventDeduplicator(store)
    assert dedup.claim("evt_1", "checkout.completed", now=T0) == ClaimResult.CLAIMED
    assert dedup.claim("evt_1", "checkout.completed", now=T0) == ClaimResult.ALREADY_PROCESSED


def test_complete_records_outcome(store):
    dedup = EventDeduplicator(store)
    dedup.claim("evt_1", "checkout.completed", now=T0)
    dedup.complete("evt_1", "applied", now=T0 + timedelta(seconds=1))

    row = store.get("evt_1")
    assert row.status == ProcessedEventStatus.PROCESSED
    assert row.outcome == "applied"
    assert row.processed_at == T0 + timedelta(seconds=1)
    assert dedup.claim("evt_1", "checkout.completed", now=T0 + timedelta(days=1)) == ClaimResult.ALREADY_PROCESSED


def test_release_allows_redelivery_to_claim_again(store):
    dedup = EventDeduplicator(store)
    dedup.claim("evt_1", "invoice.payment_failed", now=T0)
    dedup.release("evt_1")

    assert store.get("evt_1") is None
    assert dedup.claim("evt_1", "invoice.payment_failed", now=T0) == ClaimResult.CLAIMED


def test_release_never_deletes_a_processed_event(store):
    dedup = EventDeduplicator(store)
    dedup.claim("evt_1", "invoice.payment_failed", now=T0)
    dedup.complete("evt_1", "applied", now=T0)
    dedup.release("evt_1")
    assert store.get("evt_1").status == ProcessedEventStatus.PROCESSED


def test_stale_processing_claim_is_reclaimed(store):
    dedup = EventDeduplicator(store, claim_timeout_seconds=60)
    dedup.claim("evt_1", "subscription.updated", now=T0)

    # Within timeout: still owned by the first worker
    assert dedup.claim("evt_1", "subscription.updated", now=T0 + timedelta(seconds=30)) == ClaimResult.ALREADY_PROCESSED
    # After timeout: worker presumed dead
    assert dedup.claim("evt_1", "subscription.updated", now=T0 + timedelta(seconds=61)) == ClaimResult.CLAIMED
    # Only one reclaimer wins
    assert dedup.claim("evt_1", "subscription.updated", now=T0 + timedelta(seconds=62)) == ClaimResult.ALREADY_PROCESSED


@pytest.fixture(params=["memory", "sql"])
def threaded_store(request, tmp_path):
    """Store safe for concurrent threads (file SQLite with a real connection pool)."""
    if request.param == "memory":
        yield InMemoryEventStore()
        return
    engine = create_engine(f"sqlite:///{tmp_path / 'events.db'}", connect_args={"check_same_thread": False, "timeout": 30})
    create_all_tables(engine)
    yield SqlEventStore(engine)
    engine.dispose()


def test_concurrent_claims_have_exactly_one_winner(threaded_store):
    dedup = EventDeduplicator(threaded_store)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: dedup.claim("evt_race", "checkout.completed"), range(16)))

    assert results.count(ClaimResult.CLAIMED) == 1
    assert results.count(ClaimResult.ALREADY_PROCESSED) == 15


def test_prune_removes_only_old_processed_rows(store):
    dedup = EventDeduplicator(store)
    dedup.claim("evt_old", "x", now=T0)
    dedup.complete("evt_old", "applied", now=T0)
    dedup.claim("evt_new", "x", now=T0 + timedelta(days=40))
    dedup.complete("evt_new", "applied", now=T0 + timedelta(days=40))
    dedup.claim("evt_open", "x", now=T0)

    assert store.prune(T0 + timedelta(days=30)) == 1
    assert store.get("evt_old") is None
    assert store.get("evt_new") is not None
    assert store.get("evt_open").status == ProcessedEventStatus.PROCESSING


def test_claim_retries_when_holder_released_between_insert_and_read():
    store = InMemoryEventStore()
    dedup = EventDeduplicator(store)
    real_insert = store.try_insert
    inserts = []

    def insert_loses_first_race(*args):
        inserts.append(args)
        # First insert collides with a claim that is released before our read
        return False if len(inserts) == 1 else real_insert(*args)

    with patch.object(store, "try_insert", side_effect=insert_loses_first_race):
        assert dedup.claim("evt_1", "checkout.completed", now=T0) == ClaimResult.CLAIMED

    assert len(inserts) == 2
    assert store.get("evt_1").status == ProcessedEventStatus.PROCESSING


def test_claim_that_keeps_racing_is_a_transient_error():
    store = InMemoryEventStore()
    with patch.object(store, "try_insert", return_value=False), patch.object(store, "get", return_value=None):
        with pytest.raises(TransientStoreError):
            EventDeduplicator(store).claim("evt_1", "checkout.completed", now=T0)
