"""
Test the pure subscription state machine transition table.
"""
from datetime import datetime, timezone

import pytest

from responsiai.features.subscriptions.state_machine import (
    OUTCOME_APPLIED,
    OUTCOME_IGNORED,
    OUTCOME_NO_CHANGE,
    OUTCOME_ORPHAN,
    OUTCOME_REJECTED,
    OUTCOME_TERMINAL,
    SubscriptionSnapshot,
    SubscriptionStateMachine,
)
from responsiai.models.event import VerifiedEvent
from responsiai.models.intent import IntentKind
from responsiai.models.plan import PlanTier
from responsiai.models.subscription import Subscription, SubscriptionStatus
from responsiai.models.user import User

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
PERIOD_END = datetime(2024, 6, 1, tzinfo=timezone.utc)

USER = User(user_id="u1", email="u1@example.com")


@pytest.fixture
def machine():
    prices = {"price_pro": "pro", "price_unlimited": "unlimited"}
    return SubscriptionStateMachine(tier_for_price=prices.get, new_id=lambda: "local-1")


def _event(event_type, payload, event_id="evt_1"):
    return VerifiedEvent(event_id=event_id, event_type=event_type, occurred_at=NOW, payload=payload)


def _sub(status=SubscriptionStatus.ACTIVE, cancel=False, tier=PlanTier.PRO, ext="sub_1", version=1):
    return Subscription(
        id=f"local-{ext}",
        user_id="u1",
        external_subscription_id=ext,
        status=status,
        cancel_at_period_end=cancel,
        current_period_start=NOW,
        current_period_end=PERIOD_END,
        plan_tier=tier,
        version=version,
    )


def _checkout(**extra):
    payload = {
        "subscription": "sub_1",
        "customer": "cus_1",
        "client_reference_id": "u1",
        "metadata": {"plan": "pro"},
    }
    payload.update(extra)
    return _event("checkout.completed", payload)


# checkout.completed

def test_checkout_creates_active_subscription_and_sets_user_tier(machine):
    t = machine.transition(_checkout(), SubscriptionSnapshot(user=USER), NOW)

    assert t.outcome == OUTCOME_APPLIED
    sub = t.subscription
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.plan_tier == PlanTier.PRO
    assert sub.version == 1
    assert sub.current_period_start == NOW
    assert t.writes[0].expected_version is None
    assert t.user_change.plan_tier == PlanTier.PRO
    assert t.user_change.external_customer_id == "cus_1"
    assert [i.kind for i in t.intents] == [IntentKind.SUBSCRIPTION_ACTIVATED]


def test_checkout_tier_from_line_item_price(machine):
    event = _checkout(metadata={}, line_items={"data": [{"price": {"id": "price_unlimited"}}]})
    t = machine.transition(event, SubscriptionSnapshot(user=USER), NOW)
    assert t.subscription.plan_tier == PlanTier.UNLIMITED


def test_checkout_for_unknown_user_is_orphan(machine):
    t = machine.transition(_checkout(), SubscriptionSnapshot(user=None), NOW)
    assert t.outcome == OUTCOME_ORPHAN
    assert not t.changed and not t.intents


def test_checkout_without_plan_is_orphan(machine):
    t = machine.transition(_checkout(metadata={}), SubscriptionSnapshot(user=USER), NOW)
    assert t.outcome == OUTCOME_ORPHAN
    assert "malformed" in t.reason


def test_checkout_rejected_when_user_has_open_subscription(machine):
    snapshot = SubscriptionSnapshot(user=USER, open_subscription=_sub(ext="sub_old"))
    t = machine.transition(_checkout(), snapshot, NOW)
    assert t.outcome == OUTCOME_REJECTED
    assert not t.changed


def test_explicit_upgrade_cancels_previous_subscription(machine):
    old = _sub(ext="sub_old", version=3)
    event = _checkout(metadata={"plan": "unlimited", "upgrade": "true"})
    t = machine.transition(event, SubscriptionSnapshot(user=USER, open_subscription=old), NOW)

    assert t.outcome == OUTCOME_APPLIED
    assert t.superseded.external_subscription_id == "sub_old"
    assert t.superseded.status == SubscriptionStatus.CANCELED
    assert t.writes[0].expected_version == 3
    assert t.subscription.plan_tier == PlanTier.UNLIMITED
    assert t.user_change.plan_tier == PlanTier.UNLIMITED
    assert t.intents[0].payload["upgrade"] is True


def test_replayed_checkout_for_active_subscription_is_no_change(machine):
    active_user = USER.model_copy(update={"plan_tier": PlanTier.PRO})
    snapshot = SubscriptionSnapshot(user=active_user, subscription=_sub(), open_subscription=_sub())
    t = machine.transition(_checkout(current_period_end=int(PERIOD_END.timestamp())), snapshot, NOW)

    assert t.outcome == OUTCOME_NO_CHANGE
    assert not t.changed and not t.intents


def test_checkout_reactivates_existing_past_due_row(machine):
    past_due = _sub(status=SubscriptionStatus.PAST_DUE, version=4)
    active_user = USER.model_copy(update={"plan_tier": PlanTier.PRO})
    t = machine.transition(_checkout(), SubscriptionSnapshot(user=active_user, subscription=past_due, open_subscription=past_due), NOW)

    assert t.outcome == OUTCOME_APPLIED
    assert t.subscription.status == SubscriptionStatus.ACTIVE
    assert t.writes[0].expected_version == 4


def test_checkout_for_canceled_subscription_is_ignored(machine):
    snapshot = SubscriptionSnapshot(user=USER, subscription=_sub(status=SubscriptionStatus.CANCELED))
    t = machine.transition(_checkout(), snapshot, NOW)
    assert t.outcome == OUTCOME_TERMINAL


# invoice.payment_failed / invoice.payment_succeeded

def test_payment_failed_moves_active_to_past_due(machine):
    t = machine.transition(_event("invoice.payment_failed", {"subscription": "sub_1"}), SubscriptionSnapshot(subscription=_sub()), NOW)
    assert t.subscription.status == SubscriptionStatus.PAST_DUE
    assert t.subscription.version == 2
    assert t.writes[0].expected_version == 1
    assert [i.kind for i in t.intents] == [IntentKind.PAYMENT_FAILED]


def test_payment_failed_while_past_due_emits_nothing(machine):
    snapshot = SubscriptionSnapshot(subscription=_sub(status=SubscriptionStatus.PAST_DUE))
    t = machine.transition(_event("invoice.payment_failed", {"subscription": "sub_1"}), snapshot, NOW)
    assert t.outcome == OUTCOME_NO_CHANGE
    assert not t.intents


def test_payment_succeeded_recovers_past_due_silently(machine):
    snapshot = SubscriptionSnapshot(subscription=_sub(status=SubscriptionStatus.PAST_DUE))
    t = machine.transition(_event("invoice.payment_succeeded", {"subscription": "sub_1"}), snapshot, NOW)
    assert t.subscription.status == SubscriptionStatus.ACTIVE
    assert not t.intents


def test_payment_succeeded_refreshes_period(machine):
    new_end = int(datetime(2024, 7, 1, tzinfo=timezone.utc).timestamp())
    payload = {"subscription": "sub_1", "period_start": int(PERIOD_END.timestamp()), "period_end": new_end}
    t = machine.transition(_event("invoice.payment_succeeded", payload), SubscriptionSnapshot(subscription=_sub()), NOW)
    assert t.subscription.status == SubscriptionStatus.ACTIVE
    assert t.subscription.current_period_start == PERIOD_END
    assert t.subscription.current_period_end == datetime(2024, 7, 1, tzinfo=timezone.utc)


def test_invoice_for_unknown_subscription_is_orphan(machine):
    t = machine.transition(_event("invoice.payment_failed", {"subscription": "sub_x"}), SubscriptionSnapshot(), NOW)
    assert t.outcome == OUTCOME_ORPHAN


# subscription.updated

def test_cancel_flag_set_emits_scheduled_once(machine):
    event = _event("subscription.updated", {"id": "sub_1", "cancel_at_period_end": True})
    t = machine.transition(event, SubscriptionSnapshot(subscription=_sub()), NOW)
    assert t.subscription.cancel_at_period_end is True
    assert [i.kind for i in t.intents] == [IntentKind.CANCELLATION_SCHEDULED]
    assert t.intents[0].payload["period_end"] == PERIOD_END.isoformat()

    again = machine.transition(event, SubscriptionSnapshot(subscription=t.subscription), NOW)
    assert again.outcome == OUTCOME_NO_CHANGE
    assert not again.intents


def test_cancel_flag_cleared_emits_reversed(machine):
    event = _event("subscription.updated", {"id": "sub_1", "cancel_at_period_end": False})
    t = machine.transition(event, SubscriptionSnapshot(subscription=_sub(cancel=True)), NOW)
    assert t.subscription.cancel_at_period_end is False
    assert [i.kind for i in t.intents] == [IntentKind.CANCELLATION_REVERSED]


def test_update_without_cancel_flag_is_orphan(machine):
    t = machine.transition(_event("subscription.updated", {"id": "sub_1"}), SubscriptionSnapshot(subscription=_sub()), NOW)
    assert t.outcome == OUTCOME_ORPHAN


# subscription.deleted

def test_deleted_cancels_and_downgrades_user(machine):
    t = machine.transition(_event("subscription.deleted", {"id": "sub_1"}), SubscriptionSnapshot(user=USER, subscription=_sub(cancel=True)), NOW)
    assert t.subscription.status == SubscriptionStatus.CANCELED
    assert t.subscription.plan_tier == PlanTier.FREE
    assert t.user_change.plan_tier == PlanTier.FREE
    assert [i.kind for i in t.intents] == [IntentKind.SUBSCRIPTION_CANCELED]
    assert t.intents[0].payload["previous_plan_tier"] == "pro"


@pytest.mark.parametrize(
    "event_type,payload",
    [
        ("invoice.payment_failed", {"subscription": "sub_1"}),
        ("invoice.payment_succeeded", {"subscription": "sub_1"}),
        ("subscription.updated", {"id": "sub_1", "cancel_at_period_end": True}),
        ("subscription.deleted", {"id": "sub_1"}),
    ],
)
def test_canceled_is_terminal(machine, event_type, payload):
    snapshot = SubscriptionSnapshot(subscription=_sub(status=SubscriptionStatus.CANCELED))
    t = machine.transition(_event(event_type, payload), snapshot, NOW)
    assert t.outcome == OUTCOME_TERMINAL
    assert not t.changed and not t.intents


def test_unrecognized_event_type_is_ignored(machine):
    t = machine.transition(_event("charge.refunded", {"id": "ch_1"}), SubscriptionSnapshot(), NOW)
    assert t.outcome == OUTCOME_IGNORED
    assert not t.changed


def test_transition_does_not_mutate_snapshot(machine):
    sub = _sub()
    machine.transition(_event("invoice.payment_failed", {"subscription": "sub_1"}), SubscriptionSnapshot(subscription=sub), NOW)
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.version == 1
