"""
responsiai/features/notifications/dispatcher.py

Turns side-effect intents into user emails.

Dispatch happens after the state change is committed and outside any lock.
A failed send is retried a bounded number of times, then logged and
skipped; it never undoes the transition that produced the intent.
"""
from __future__ import annotations

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from responsiai.core.errors import TransientStoreError
from responsiai.features.notifications.sinks import Message, Sink
from responsiai.features.subscriptions.repository import SubscriptionRepository
from responsiai.models.intent import Intent, IntentKind
from responsiai.models.plan import PLAN_DISPLAY_NAMES, parse_tier

logger = logging.getLogger("responsiai.notifications")

SIGNATURE = "Best regards,\nThe ResponsiAI Team"

# Failures worth another attempt; anything else is logged and skipped at once
RETRYABLE_ERRORS = (smtplib.SMTPException, OSError, TransientStoreError)


@dataclass(frozen=True)
class SendResult:
    kind: IntentKind
    user_id: str
    sent: bool
    reason: Optional[str] = None


def _plan_name(value: Optional[str]) -> str:
    tier = parse_tier(value)
    return PLAN_DISPLAY_NAMES[tier] if tier else (value or "your")


def _date(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value).strftime("%B %d, %Y")
    except ValueError:
        return value


def _activated(payload: Dict, app_url: str) -> Message:
    plan = _plan_name(payload.get("plan_tier"))
    return Message(
        to="",
        subject=f"Welcome to {plan}!",
        body=(
            f"Thank you for subscribing to the {plan} plan!\n"
            "You now have access to all the features included in your plan.\n\n"
            f"{SIGNATURE}"
        ),
    )


def _payment_failed(payload: Dict, app_url: str) -> Message:
    plan = _plan_name(payload.get("plan_tier"))
    return Message(
        to="",
        subject="Payment Failed - Action Required",
        body=(
            f"We were unable to process the payment for your {plan} subscription.\n"
            "Please update your payment method to avoid service interruption:\n"
            f"{app_url}/settings\n\n"
            f"{SIGNATURE}"
        ),
    )


def _cancellation_scheduled(payload: Dict, app_url: str) -> Message:
    plan = _plan_name(payload.get("plan_tier"))
    end = _date(payload.get("period_end"))
    until = f" until {end}" if end else " until the end of the current billing period"
    return Message(
        to="",
        subject="Subscription Cancellation Confirmed",
        body=(
            f"Your {plan} subscription has been set to cancel.\n"
            f"You'll continue to have access to your plan features{until}.\n"
            "Changed your mind? You can resume any time before then.\n\n"
            f"{SIGNATURE}"
        ),
    )


def _cancellation_reversed(payload: Dict, app_url: str) -> Message:
    plan = _plan_name(payload.get("plan_tier"))
    return Message(
        to="",
        subject="Subscription Resumed",
        body=(
            f"Your {plan} subscription will continue to renew as normal.\n\n"
            f"{SIGNATURE}"
        ),
    )


def _canceled(payload: Dict, app_url: str) -> Message:
    plan = _plan_name(payload.get("previous_plan_tier"))
    return Message(
        to="",
        subject="Subscription Cancelled",
        body=(
            f"Your {plan} subscription has ended and your account is now on the Free plan.\n"
            "We're sorry to see you go! If you have feedback on how we can improve, please let us know.\n\n"
            f"{SIGNATURE}"
        ),
    )


def _usage_threshold(payload: Dict, app_url: str) -> Message:
    plan = _plan_name(payload.get("plan_tier"))
    used = payload.get("count")
    limit = payload.get("limit")
    pct = payload.get("percentage")
    return Message(
        to="",
        subject="Usage Limit Reached" if pct == 100 else "Usage Limit Warning",
        body=(
            f"You've used {used} of {limit} ({pct}%) analyses this month on your {plan} plan.\n"
            "Consider upgrading your plan if you need more analyses:\n"
            f"{app_url}/billing\n\n"
            f"{SIGNATURE}"
        ),
    )


RENDERERS: Dict[IntentKind, Callable[[Dict, str], Message]] = {
    IntentKind.SUBSCRIPTION_ACTIVATED: _activated,
    IntentKind.PAYMENT_FAILED: _payment_failed,
    IntentKind.CANCELLATION_SCHEDULED: _cancellation_scheduled,
    IntentKind.CANCELLATION_REVERSED: _cancellation_reversed,
    IntentKind.SUBSCRIPTION_CANCELED: _canceled,
    IntentKind.USAGE_THRESHOLD_REACHED: _usage_threshold,
}


def render(intent: Intent, to: str, app_url: str = "") -> Message:
    message = RENDERERS[intent.kind](intent.payload, app_url.rstrip("/"))
    return Message(to=to, subject=message.subject, body=message.body)


class NotificationDispatcher:
    def __init__(
        self,
        sink: Sink,
        repository: SubscriptionRepository,
        app_url: str = "",
        retry_attempts: int = 3,
        retry_base_seconds: float = 0.5,
    ) -> None:
        self.sink = sink
        self._repository = repository
        self._app_url = app_url
        self._attempts = max(1, retry_attempts)
        self._base = retry_base_seconds

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._attempts),
            wait=wait_exponential(multiplier=self._base, min=0, max=10),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )

    async def _deliver(self, intent: Intent) -> SendResult:
        user = await asyncio.to_thread(self._repository.get_user, intent.user_id)
        if user is None or not user.email:
            return SendResult(intent.kind, intent.user_id, sent=False, reason="no_recipient")
        message = render(intent, user.email, self._app_url)
        await asyncio.to_thread(self.sink.send, message)
        return SendResult(intent.kind, intent.user_id, sent=True)

    async def send(self, intent: Intent) -> SendResult:
        try:
            async for attempt in self._retrying():
                with attempt:
                    result = await self._deliver(intent)
        except RetryError as e:
            reason = repr(e.last_attempt.exception())
            logger.error(
                f"[notifications] giving up on {intent.kind.value}: {reason}",
                extra={"user_id": intent.user_id, "outcome": "send_failed"},
            )
            return SendResult(intent.kind, intent.user_id, sent=False, reason=reason)
        except Exception as e:
            logger.exception(
                f"[notifications] {intent.kind.value} failed",
                extra={"user_id": intent.user_id, "outcome": "send_failed"},
            )
            return SendResult(intent.kind, intent.user_id, sent=False, reason=repr(e))

        if result.sent:
            logger.info(
                f"[notifications] sent {intent.kind.value} via {self.sink.name}",
                extra={"user_id": intent.user_id, "outcome": "sent"},
            )
        else:
            logger.warning(
                f"[notifications] skipped {intent.kind.value}: {result.reason}",
                extra={"user_id": intent.user_id, "outcome": result.reason},
            )
        return result

    async def dispatch(self, intents: Iterable[Intent]) -> List[SendResult]:
        """Send each intent in order; one failure does not stop the rest."""
        return [await self.send(intent) for intent in intents]
