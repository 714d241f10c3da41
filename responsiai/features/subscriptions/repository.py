"""
Users and subscriptions persistence.

commit() applies a Transition atomically: every subscription write is
version-checked (compare-and-set) and the user row is updated in the same
transaction, so a user's tier and their subscription never disagree.
"""
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from responsiai.core.database import as_utc, session_scope, store_errors, subscriptions, users
from responsiai.core.errors import ConcurrentModificationError, ConflictError
from responsiai.features.subscriptions.state_machine import Transition
from responsiai.models.plan import PlanTier
from responsiai.models.subscription import Subscription, SubscriptionStatus
from responsiai.models.user import User


class SubscriptionRepository(Protocol):
    def create_user(self, user: User) -> User:
        """Insert a user; ConflictError if the id or email is taken."""
        ...

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def get_user_by_customer(self, external_customer_id: str) -> Optional[User]:
        ...

    def get_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        ...

    def get_open_for_user(self, user_id: str) -> Optional[Subscription]:
        ...

    def commit(self, transition: Transition) -> None:
        """Persist a transition; ConcurrentModificationError on a version mismatch."""
        ...


class InMemorySubscriptionRepository:
    """In-memory SubscriptionRepository."""

    def __init__(self) -> None:
        self._users: Dict[str, User] = {}
        self._subs: Dict[str, Subscription] = {}  # keyed by external id
        self._lock = threading.Lock()

    def create_user(self, user: User) -> User:
        with self._lock:
            if user.user_id in self._users or any(u.email == user.email for u in self._users.values()):
                raise ConflictError("User already exists")
            stored = user.model_copy(update={"created_at": user.created_at or datetime.now(timezone.utc)})
            self._users[user.user_id] = stored
            return stored

    def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            return self._users.get(user_id)

    def get_user_by_customer(self, external_customer_id: str) -> Optional[User]:
        with self._lock:
            for user in self._users.values():
                if user.external_customer_id == external_customer_id:
                    return user
            return None

    def get_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._subs.get(external_subscription_id)

    def get_open_for_user(self, user_id: str) -> Optional[Subscription]:
        with self._lock:
            for sub in self._subs.values():
                if sub.user_id == user_id and sub.is_open:
                    return sub
            return None

    def commit(self, transition: Transition) -> None:
        with self._lock:
            # Validate everything before mutating so the commit is all-or-nothing
            for write in transition.writes:
                current = self._subs.get(write.subscription.external_subscription_id)
                if write.expected_version is None:
                    if current is not None:
                        raise ConcurrentModificationError("subscription already exists")
                elif current is None or current.version != write.expected_version:
                    raise ConcurrentModificationError("subscription version changed")
            change = transition.user_change
            if change is not None and change.user_id not in self._users:
                raise ConcurrentModificationError("user disappeared")

            staged = dict(self._subs)
            for write in transition.writes:
                staged[write.subscription.external_subscription_id] = write.subscription
            for write in transition.writes:
                owner = write.subscription.user_id
                if sum(1 for s in staged.values() if s.user_id == owner and s.is_open) > 1:
                    raise ConcurrentModificationError("user already has an open subscription")
            self._subs = staged
            if change is not None:
                updates = {}
                if change.plan_tier is not None:
                    updates["plan_tier"] = change.plan_tier
                if change.external_customer_id is not None:
                    updates["external_customer_id"] = change.external_customer_id
                self._users[change.user_id] = self._users[change.user_id].model_copy(update=updates)


def _user_from_row(row) -> User:
    return User(
        user_id=row.user_id,
        email=row.email,
        display_name=row.display_name,
        plan_tier=PlanTier(row.plan_tier),
        external_customer_id=row.external_customer_id,
        created_at=as_utc(row.created_at),
    )


def _subscription_from_row(row) -> Subscription:
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        external_subscription_id=row.external_subscription_id,
        status=SubscriptionStatus(row.status),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        current_period_start=as_utc(row.current_period_start),
        current_period_end=as_utc(row.current_period_end),
        plan_tier=PlanTier(row.plan_tier),
        version=row.version,
    )


def _subscription_values(sub: Subscription) -> dict:
    return {
        "status": sub.status.value,
        "cancel_at_period_end": sub.cancel_at_period_end,
        "current_period_start": sub.current_period_start,
        "current_period_end": sub.current_period_end,
        "plan_tier": sub.plan_tier.value,
        "version": sub.version,
        "updated_at": datetime.now(timezone.utc),
    }


class SqlSubscriptionRepository:
    """SubscriptionRepository backed by the app_users and subscriptions tables."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def create_user(self, user: User) -> User:
        now = datetime.now(timezone.utc)
        with store_errors("users.insert"):
            try:
                with session_scope(self._engine) as session:
                    session.execute(
                        insert(users).values(
                            user_id=user.user_id,
                            email=user.email,
                            display_name=user.display_name,
                            plan_tier=user.plan_tier.value,
                            external_customer_id=user.external_customer_id,
                            created_at=now,
                            updated_at=now,
                        )
                    )
            except IntegrityError as e:
                raise ConflictError("User already exists") from e
        return user.model_copy(update={"created_at": now})

    def get_user(self, user_id: str) -> Optional[User]:
        with store_errors("users.get"):
            with session_scope(self._engine) as session:
                row = session.execute(select(users).where(users.c.user_id == user_id)).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_customer(self, external_customer_id: str) -> Optional[User]:
        with store_errors("users.get_by_customer"):
            with session_scope(self._engine) as session:
                row = session.execute(
                    select(users).where(users.c.external_customer_id == external_customer_id)
                ).fetchone()
        return _user_from_row(row) if row else None

    def get_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        with store_errors("subscriptions.get"):
            with session_scope(self._engine) as session:
                row = session.execute(
                    select(subscriptions).where(
                        subscriptions.c.external_subscription_id == external_subscription_id
                    )
                ).fetchone()
        return _subscription_from_row(row) if row else None

    def get_open_for_user(self, user_id: str) -> Optional[Subscription]:
        with store_errors("subscriptions.get_open"):
            with session_scope(self._engine) as session:
                row = session.execute(
                    select(subscriptions)
                    .where(subscriptions.c.user_id == user_id)
                    .where(subscriptions.c.status != SubscriptionStatus.CANCELED.value)
                ).fetchone()
        return _subscription_from_row(row) if row else None

    def commit(self, transition: Transition) -> None:
        with store_errors("subscriptions.commit"):
            try:
                with session_scope(self._engine) as session:
                    for write in transition.writes:
                        sub = write.subscription
                        if write.expected_version is None:
                            session.execute(
                                insert(subscriptions).values(
                                    id=sub.id,
                                    user_id=sub.user_id,
                                    external_subscription_id=sub.external_subscription_id,
                                    created_at=datetime.now(timezone.utc),
                                    **_subscription_values(sub),
                                )
                            )
                            continue
                        result = session.execute(
                            update(subscriptions)
                            .where(subscriptions.c.id == sub.id)
                            .where(subscriptions.c.version == write.expected_version)
                            .values(**_subscription_values(sub))
                        )
                        if result.rowcount != 1:
                            raise ConcurrentModificationError("subscription version changed")

                    change = transition.user_change
                    if change is not None:
                        values = {"updated_at": datetime.now(timezone.utc)}
                        if change.plan_tier is not None:
                            values["plan_tier"] = change.plan_tier.value
                        if change.external_customer_id is not None:
                            values["external_customer_id"] = change.external_customer_id
                        result = session.execute(
                            update(users).where(users.c.user_id == change.user_id).values(**values)
                        )
                        if result.rowcount != 1:
                            raise ConcurrentModificationError("user disappeared")
            except IntegrityError as e:
                # Lost the race for the one-open-subscription index or a unique id
                raise ConcurrentModificationError(f"subscription commit conflicted: {e.orig}") from e
