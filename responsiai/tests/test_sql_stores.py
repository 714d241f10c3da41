"""
Test the SQL subscription repository and error mapping on in-memory SQLite.
"""
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from responsiai.core.database import store_errors
from responsiai.core.errors import (
    ConcurrentModificationError,
    ConflictError,
    TransientStoreError,
    UnrecoverableStoreError,
)
from responsiai.features.subscriptions.repository import InMemorySubscriptionRepository, SqlSubscriptionRepository
from responsiai.features.subscriptions.state_machine import SubscriptionWrite, Transition, UserChange
from responsiai.models.plan import PlanTier
from responsiai.models.subscription import Subscription, SubscriptionStatus
from responsiai.models.user import User

PERIOD_END = datetime(2024, 6, 1, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sql"])
def repo(request):
    if request.param == "memory":
        r = InMemorySubscriptionRepository()
    else:
        r = SqlSubscriptionRepository(request.getfixturevalue("sqlite_engine"))
    r.create_user(User(user_id="u1", email="u1@example.com"))
    return r


def _sub(ext="sub_1", version=1, status=SubscriptionStatus.ACTIVE, sub_id=None):
    return Subscription(
        id=sub_id or f"id-{ext}",
        user_id="u1",
        external_subscription_id=ext,
        status=status,
        current_period_end=PERIOD_END,
        plan_tier=PlanTier.PRO,
        version=version,
    )


def _create(repo, ext="sub_1"):
    repo.commit(
        Transition(
            outcome="applied",
            writes=[SubscriptionWrite(_sub(ext), expected_version=None)],
            user_change=UserChange(user_id="u1", plan_tier=PlanTier.PRO, external_customer_id="cus_1"),
        )
    )


def test_create_user_conflicts_on_duplicate_id_or_email(repo):
    with pytest.raises(ConflictError):
        repo.create_user(User(user_id="u1", email="other@example.com"))
    with pytest.raises(ConflictError):
        repo.create_user(User(user_id="u2", email="u1@example.com"))


def test_commit_creates_subscription_and_updates_user_atomically(repo):
    _create(repo)

    sub = repo.get_by_external_id("sub_1")
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.current_period_end == PERIOD_END
    assert repo.get_open_for_user("u1") == sub

    user = repo.get_user("u1")
    assert user.plan_tier == PlanTier.PRO
    assert user.external_customer_id == "cus_1"
    assert repo.get_user_by_customer("cus_1").user_id == "u1"


def test_commit_with_stale_version_is_rejected(repo):
    _create(repo)
    ok = _sub(version=2, status=SubscriptionStatus.PAST_DUE)
    repo.commit(Transition(outcome="applied", writes=[SubscriptionWrite(ok, expected_version=1)]))

    stale = _sub(version=2, status=SubscriptionStatus.CANCELED)
    with pytest.raises(ConcurrentModificationError):
        repo.commit(Transition(outcome="applied", writes=[SubscriptionWrite(stale, expected_version=1)]))
    assert repo.get_by_external_id("sub_1").status == SubscriptionStatus.PAST_DUE


def test_second_open_subscription_is_rejected(repo):
    _create(repo)
    with pytest.raises(ConcurrentModificationError):
        _create(repo, ext="sub_2")
    assert repo.get_by_external_id("sub_2") is None
    assert repo.get_open_for_user("u1").external_subscription_id == "sub_1"


def test_upgrade_replaces_open_subscription_in_one_commit(repo):
    _create(repo)
    canceled = _sub(version=2, status=SubscriptionStatus.CANCELED)
    repo.commit(
        Transition(
            outcome="applied",
            writes=[
                SubscriptionWrite(canceled, expected_version=1),
                SubscriptionWrite(_sub("sub_2"), expected_version=None),
            ],
            user_change=UserChange(user_id="u1", plan_tier=PlanTier.UNLIMITED),
        )
    )
    assert repo.get_by_external_id("sub_1").status == SubscriptionStatus.CANCELED
    assert repo.get_open_for_user("u1").external_subscription_id == "sub_2"
    assert repo.get_user("u1").plan_tier == PlanTier.UNLIMITED


def test_failed_commit_leaves_user_untouched(repo):
    _create(repo)
    stale = _sub(version=5, status=SubscriptionStatus.CANCELED)
    with pytest.raises(ConcurrentModificationError):
        repo.commit(
            Transition(
                outcome="applied",
                writes=[SubscriptionWrite(stale, expected_version=4)],
                user_change=UserChange(user_id="u1", plan_tier=PlanTier.FREE),
            )
        )
    assert repo.get_user("u1").plan_tier == PlanTier.PRO


def test_store_errors_maps_driver_failures():
    with pytest.raises(TransientStoreError):
        with store_errors("load_user"):
            raise OperationalError("SELECT 1", {}, Exception("server closed the connection"))

    from sqlalchemy.exc import ProgrammingError

    with pytest.raises(UnrecoverableStoreError):
        with store_errors("load_user"):
            raise ProgrammingError("SELECT nope", {}, Exception("no such column"))
