"""
responsiai/features/subscriptions/service.py

Applies verified processor events to the subscription store.

Each event is one read-modify-write: load the snapshot, run the pure state
machine, commit the transition with a version check. The whole cycle runs
under the per-subscription lock (and the user lock for checkouts) and is
retried as a unit on transient store failures, re-reading fresh state.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

from responsiai.core.logging import log_event
from responsiai.core.retry import async_store_retrying
from responsiai.features.subscriptions.locks import KeyedLock
from responsiai.features.subscriptions.repository import SubscriptionRepository
from responsiai.features.subscriptions.state_machine import (
    SubscriptionSnapshot,
    SubscriptionStateMachine,
    Transition,
    checkout_user_ref,
    subscription_ref,
)
from responsiai.models.event import VerifiedEvent


class SubscriptionService:
    def __init__(
        self,
        repository: SubscriptionRepository,
        machine: SubscriptionStateMachine,
        locks: Optional[KeyedLock] = None,
        retry_attempts: int = 3,
        retry_base_seconds: float = 0.2,
    ) -> None:
        self.repository = repository
        self.machine = machine
        self.locks = locks or KeyedLock()
        self._attempts = retry_attempts
        self._base = retry_base_seconds

    def load_snapshot(self, event: VerifiedEvent) -> SubscriptionSnapshot:
        external_id = subscription_ref(event)
        subscription = self.repository.get_by_external_id(external_id) if external_id else None

        user = None
        user_ref = checkout_user_ref(event)
        if user_ref:
            user = self.repository.get_user(user_ref)
        elif subscription is not None:
            user = self.repository.get_user(subscription.user_id)
        elif event.payload.get("customer"):
            user = self.repository.get_user_by_customer(event.payload["customer"])

        open_subscription = self.repository.get_open_for_user(user.user_id) if user else None
        return SubscriptionSnapshot(user=user, subscription=subscription, open_subscription=open_subscription)

    def apply_once(self, event: VerifiedEvent, now: Optional[datetime] = None) -> Transition:
        """One synchronous read-transition-commit cycle (no lock, no retry)."""
        snapshot = self.load_snapshot(event)
        transition = self.machine.transition(event, snapshot, now or datetime.now(timezone.utc))
        if transition.changed:
            self.repository.commit(transition)
        return transition

    async def apply(self, event: VerifiedEvent, now: Optional[datetime] = None) -> Transition:
        external_id = subscription_ref(event)
        user_ref = checkout_user_ref(event)
        keys = (
            f"subscription:{external_id}" if external_id else None,
            f"user:{user_ref}" if user_ref else None,
        )
        async with self.locks.hold(*keys):
            async for attempt in async_store_retrying(self._attempts, self._base):
                with attempt:
                    transition = await asyncio.to_thread(self.apply_once, event, now)
        log_event(
            "info",
            f"[subscriptions] {event.event_type} -> {transition.outcome}",
            user_id=transition.subscription.user_id if transition.subscription else user_ref,
            event_id=event.event_id,
            event_type=event.event_type,
            extra={"subscription_id": external_id, "outcome": transition.outcome},
        )
        return transition
