"""
Subscription lifecycle state machine.

Pure: given a verified event and a snapshot of the prior state, produce the
new state and the side-effect intents. No I/O, no clock reads (the caller
passes `now`), so every transition is deterministic and unit-testable.

States:
    none -> trialing | active -> past_due -> active | canceled
    active | trialing -> canceled
    canceled is terminal; a new checkout creates a fresh subscription.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from responsiai.models.event import VerifiedEvent
from responsiai.models.intent import Intent, IntentKind
from responsiai.models.plan import PlanTier, parse_tier
from responsiai.models.subscription import Subscription, SubscriptionStatus
from responsiai.models.user import User

CHECKOUT_COMPLETED = "checkout.completed"
PAYMENT_FAILED = "invoice.payment_failed"
PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
SUBSCRIPTION_UPDATED = "subscription.updated"
SUBSCRIPTION_DELETED = "subscription.deleted"

# Outcomes recorded on the processed event
OUTCOME_APPLIED = "applied"
OUTCOME_NO_CHANGE = "no_change"
OUTCOME_IGNORED = "ignored_unrecognized"
OUTCOME_TERMINAL = "ignored_canceled"
OUTCOME_REJECTED = "rejected_existing_subscription"
OUTCOME_ORPHAN = "orphan"


class MalformedEventError(ValueError):
    """Event payload is missing fields the transition needs."""


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Prior state read under the subscription lock."""
    user: Optional[User] = None
    subscription: Optional[Subscription] = None  # addressed by the event's external id
    open_subscription: Optional[Subscription] = None  # the user's non-canceled subscription


@dataclass(frozen=True)
class SubscriptionWrite:
    subscription: Subscription
    expected_version: Optional[int]  # None = insert


@dataclass(frozen=True)
class UserChange:
    user_id: str
    plan_tier: Optional[PlanTier] = None
    external_customer_id: Optional[str] = None


@dataclass(frozen=True)
class Transition:
    outcome: str
    writes: List[SubscriptionWrite] = field(default_factory=list)
    user_change: Optional[UserChange] = None
    intents: List[Intent] = field(default_factory=list)
    reason: Optional[str] = None

    @property
    def changed(self) -> bool:
        return bool(self.writes or self.user_change)

    @property
    def subscription(self) -> Optional[Subscription]:
        """The subscription addressed by the event after the transition."""
        return self.writes[-1].subscription if self.writes else None

    @property
    def superseded(self) -> Optional[Subscription]:
        """Previous open subscription canceled by an explicit upgrade."""
        return self.writes[0].subscription if len(self.writes) > 1 else None


# Helpers for reading processor payloads

def _ts(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        return datetime.fromtimestamp(int(value), timezone.utc)
    except (TypeError, ValueError) as e:
        raise MalformedEventError(f"invalid timestamp: {value!r}") from e


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def _metadata(payload: Dict[str, Any]) -> Dict[str, Any]:
    meta = payload.get("metadata") or {}
    return meta if isinstance(meta, dict) else {}


def _require(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not value or not isinstance(value, str):
        raise MalformedEventError(f"missing {key}")
    return value


def _price_ids(payload: Dict[str, Any]) -> List[str]:
    """Price ids from a checkout session's line_items or a subscription's items."""
    ids = []
    for container in ("line_items", "items"):
        block = payload.get(container) or {}
        for item in block.get("data", []) if isinstance(block, dict) else []:
            price = item.get("price") or {}
            pid = price.get("id") if isinstance(price, dict) else price
            if pid:
                ids.append(pid)
    return ids


def subscription_ref(event: VerifiedEvent) -> Optional[str]:
    """External subscription id an event addresses (None if absent)."""
    payload = event.payload
    if event.event_type in (SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED):
        return payload.get("id")
    return payload.get("subscription")


def checkout_user_ref(event: VerifiedEvent) -> Optional[str]:
    if event.event_type != CHECKOUT_COMPLETED:
        return None
    meta = _metadata(event.payload)
    return event.payload.get("client_reference_id") or meta.get("user_id") or meta.get("userId")


class SubscriptionStateMachine:
    """Transition table keyed by normalized event type."""

    def __init__(
        self,
        tier_for_price: Optional[Callable[[Optional[str]], Optional[str]]] = None,
        new_id: Callable[[], str] = lambda: str(uuid4()),
    ) -> None:
        self._tier_for_price = tier_for_price or (lambda _price_id: None)
        self._new_id = new_id
        self.handlers = {
            CHECKOUT_COMPLETED: self._on_checkout_completed,
            PAYMENT_FAILED: self._on_payment_failed,
            PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            SUBSCRIPTION_DELETED: self._on_subscription_deleted,
        }

    def transition(self, event: VerifiedEvent, snapshot: SubscriptionSnapshot, now: datetime) -> Transition:
        handler = self.handlers.get(event.event_type)
        if handler is None:
            return Transition(outcome=OUTCOME_IGNORED)
        try:
            return handler(event, snapshot, now)
        except MalformedEventError as e:
            return Transition(outcome=OUTCOME_ORPHAN, reason=f"malformed payload: {e}")

    # -- handlers -------------------------------------------------------

    def _resolve_tier(self, payload: Dict[str, Any]) -> PlanTier:
        meta = _metadata(payload)
        tier = parse_tier(meta.get("plan") or meta.get("tier") or meta.get("plan_id"))
        if tier is None:
            for price_id in _price_ids(payload):
                tier = parse_tier(self._tier_for_price(price_id))
                if tier:
                    break
        if tier is None or tier == PlanTier.FREE:
            raise MalformedEventError("checkout without a paid plan tier")
        return tier

    def _on_checkout_completed(self, event: VerifiedEvent, snapshot: SubscriptionSnapshot, now: datetime) -> Transition:
        payload = event.payload
        external_id = _require(payload, "subscription")
        if snapshot.user is None:
            return Transition(outcome=OUTCOME_ORPHAN, reason="unknown user")
        user = snapshot.user
        tier = self._resolve_tier(payload)
        upgrade = _truthy(_metadata(payload).get("upgrade"))

        existing = snapshot.subscription
        if existing is not None and existing.user_id != user.user_id:
            return Transition(outcome=OUTCOME_ORPHAN, reason="subscription belongs to another user")
        if existing is not None and existing.status == SubscriptionStatus.CANCELED:
            return Transition(outcome=OUTCOME_TERMINAL)

        period_start = _ts(payload.get("current_period_start")) or event.occurred_at
        period_end = _ts(payload.get("current_period_end"))
        if (
            existing is not None
            and existing.status == SubscriptionStatus.ACTIVE
            and existing.plan_tier == tier
            and user.plan_tier == tier
            and existing.current_period_start == period_start
            and (period_end is None or existing.current_period_end == period_end)
        ):
            # Same checkout applied again (e.g. after a lost completion record)
            return Transition(outcome=OUTCOME_NO_CHANGE, reason="subscription already active")

        writes: List[SubscriptionWrite] = []
        current = snapshot.open_subscription
        if current is not None and current.external_subscription_id != external_id:
            if not upgrade:
                return Transition(outcome=OUTCOME_REJECTED, reason="user already has an open subscription")
            # Explicit upgrade replaces the previous open subscription
            writes.append(
                SubscriptionWrite(
                    current.model_copy(
                        update={
                            "status": SubscriptionStatus.CANCELED,
                            "cancel_at_period_end": False,
                            "version": current.version + 1,
                        }
                    ),
                    expected_version=current.version,
                )
            )

        if existing is not None:
            activated = existing.model_copy(
                update={
                    "status": SubscriptionStatus.ACTIVE,
                    "plan_tier": tier,
                    "current_period_start": period_start,
                    "current_period_end": period_end or existing.current_period_end,
                    "version": existing.version + 1,
                }
            )
            writes.append(SubscriptionWrite(activated, expected_version=existing.version))
        else:
            activated = Subscription(
                id=self._new_id(),
                user_id=user.user_id,
                external_subscription_id=external_id,
                status=SubscriptionStatus.ACTIVE,
                cancel_at_period_end=False,
                current_period_start=period_start,
                current_period_end=period_end,
                plan_tier=tier,
                version=1,
            )
            writes.append(SubscriptionWrite(activated, expected_version=None))

        return Transition(
            outcome=OUTCOME_APPLIED,
            writes=writes,
            user_change=UserChange(
                user_id=user.user_id,
                plan_tier=tier,
                external_customer_id=payload.get("customer") or user.external_customer_id,
            ),
            intents=[
                Intent(
                    kind=IntentKind.SUBSCRIPTION_ACTIVATED,
                    user_id=user.user_id,
                    payload={"plan_tier": tier.value, "upgrade": bool(writes[:-1])},
                )
            ],
        )

    def _existing_open(self, snapshot: SubscriptionSnapshot) -> Optional[Transition]:
        """Common precondition: the addressed subscription exists and is not terminal."""
        if snapshot.subscription is None:
            return Transition(outcome=OUTCOME_ORPHAN, reason="unknown subscription")
        if snapshot.subscription.status == SubscriptionStatus.CANCELED:
            return Transition(outcome=OUTCOME_TERMINAL)
        return None

    def _on_payment_failed(self, event: VerifiedEvent, snapshot: SubscriptionSnapshot, now: datetime) -> Transition:
        blocked = self._existing_open(snapshot)
        if blocked:
            return blocked
        sub = snapshot.subscription
        if sub.status == SubscriptionStatus.PAST_DUE:
            return Transition(outcome=OUTCOME_NO_CHANGE)
        updated = sub.model_copy(update={"status": SubscriptionStatus.PAST_DUE, "version": sub.version + 1})
        return Transition(
            outcome=OUTCOME_APPLIED,
            writes=[SubscriptionWrite(updated, expected_version=sub.version)],
            intents=[
                Intent(
                    kind=IntentKind.PAYMENT_FAILED,
                    user_id=sub.user_id,
                    payload={
                        "plan_tier": sub.plan_tier.value,
                        "attempt_count": event.payload.get("attempt_count"),
                    },
                )
            ],
        )

    def _on_payment_succeeded(self, event: VerifiedEvent, snapshot: SubscriptionSnapshot, now: datetime) -> Transition:
        blocked = self._existing_open(snapshot)
        if blocked:
            return blocked
        sub = snapshot.subscription
        changes: Dict[str, Any] = {}
        if sub.status == SubscriptionStatus.PAST_DUE:
            changes["status"] = SubscriptionStatus.ACTIVE
        period_start = _ts(event.payload.get("period_start"))
        period_end = _ts(event.payload.get("period_end"))
        if period_end and period_end != sub.current_period_end:
            changes["current_period_start"] = period_start or sub.current_period_start
            changes["current_period_end"] = period_end
        if not changes:
            return Transition(outcome=OUTCOME_NO_CHANGE)
        changes["version"] = sub.version + 1
        # Recovery is silent: no intent
        return Transition(
            outcome=OUTCOME_APPLIED,
            writes=[SubscriptionWrite(sub.model_copy(update=changes), expected_version=sub.version)],
        )

    def _on_subscription_updated(self, event: VerifiedEvent, snapshot: SubscriptionSnapshot, now: datetime) -> Transition:
        blocked = self._existing_open(snapshot)
        if blocked:
            return blocked
        sub = snapshot.subscription
        if "cancel_at_period_end" not in event.payload:
            raise MalformedEventError("missing cancel_at_period_end")
        cancel = _truthy(event.payload.get("cancel_at_period_end"))

        changes: Dict[str, Any] = {}
        period_start = _ts(event.payload.get("current_period_start"))
        period_end = _ts(event.payload.get("current_period_end"))
        if period_end and period_end != sub.current_period_end:
            changes["current_period_start"] = period_start or sub.current_period_start
            changes["current_period_end"] = period_end

        intents: List[Intent] = []
        if cancel != sub.cancel_at_period_end:
            changes["cancel_at_period_end"] = cancel
            period_end_value = period_end or sub.current_period_end
            intents.append(
                Intent(
                    kind=IntentKind.CANCELLATION_SCHEDULED if cancel else IntentKind.CANCELLATION_REVERSED,
                    user_id=sub.user_id,
                    payload={
                        "plan_tier": sub.plan_tier.value,
                        "period_end": period_end_value.isoformat() if period_end_value else None,
                    },
                )
            )
        if not changes:
            return Transition(outcome=OUTCOME_NO_CHANGE)
        changes["version"] = sub.version + 1
        return Transition(
            outcome=OUTCOME_APPLIED,
            writes=[SubscriptionWrite(sub.model_copy(update=changes), expected_version=sub.version)],
            intents=intents,
        )

    def _on_subscription_deleted(self, event: VerifiedEvent, snapshot: SubscriptionSnapshot, now: datetime) -> Transition:
        blocked = self._existing_open(snapshot)
        if blocked:
            return blocked
        sub = snapshot.subscription
        canceled = sub.model_copy(
            update={
                "status": SubscriptionStatus.CANCELED,
                "cancel_at_period_end": False,
                "plan_tier": PlanTier.FREE,
                "version": sub.version + 1,
            }
        )
        return Transition(
            outcome=OUTCOME_APPLIED,
            writes=[SubscriptionWrite(canceled, expected_version=sub.version)],
            user_change=UserChange(user_id=sub.user_id, plan_tier=PlanTier.FREE),
            intents=[
                Intent(
                    kind=IntentKind.SUBSCRIPTION_CANCELED,
                    user_id=sub.user_id,
                    payload={
                        "previous_plan_tier": sub.plan_tier.value,
                        "period_end": sub.current_period_end.isoformat() if sub.current_period_end else None,
                    },
                )
            ],
        )
