"""
responsiai/features/webhooks/pipeline.py

Webhook processing pipeline: claim -> apply -> complete -> dispatch.

Verification is done by the endpoint before enqueueing (CPU only). The
rest runs on a worker:

1. Claim the event id. A duplicate is acknowledged and dropped.
2. Apply the transition under the subscription lock (retried on transient
   store errors). On failure the claim is released so the processor's
   redelivery retries the whole event.
3. Record the outcome on the processed-event row.
4. Dispatch the transition's intents, after the lock is released.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from responsiai.core.config import CoreConfig
from responsiai.core.logging import bound_request_id
from responsiai.core.retry import async_store_retrying
from responsiai.features.billing import verifier
from responsiai.features.events.dedup import ClaimResult, EventDeduplicator
from responsiai.features.notifications.dispatcher import NotificationDispatcher, SendResult
from responsiai.features.subscriptions.service import SubscriptionService
from responsiai.features.subscriptions.state_machine import OUTCOME_ORPHAN, OUTCOME_REJECTED
from responsiai.models.event import VerifiedEvent
from responsiai.models.intent import Intent

logger = logging.getLogger("responsiai.webhooks")

OUTCOME_DUPLICATE = "already_processed"


@dataclass
class ProcessResult:
    event_id: str
    outcome: str
    intents: List[Intent] = field(default_factory=list)
    notifications: List[SendResult] = field(default_factory=list)

    @property
    def duplicate(self) -> bool:
        return self.outcome == OUTCOME_DUPLICATE


class WebhookPipeline:
    def __init__(
        self,
        config: CoreConfig,
        deduplicator: EventDeduplicator,
        subscriptions: SubscriptionService,
        dispatcher: NotificationDispatcher,
    ) -> None:
        self.config = config
        self.deduplicator = deduplicator
        self.subscriptions = subscriptions
        self.dispatcher = dispatcher

    def verify(self, raw_payload: bytes, signature_header: Optional[str], now: Optional[datetime] = None) -> VerifiedEvent:
        return verifier.verify(
            raw_payload,
            signature_header,
            self.config.webhook_secret or "",
            now=now,
            tolerance_seconds=self.config.webhook_tolerance_seconds,
        )

    async def _store_call(self, fn, *args):
        async for attempt in async_store_retrying(self.config.store_retry_attempts, self.config.store_retry_base_seconds):
            with attempt:
                return await asyncio.to_thread(fn, *args)

    async def _release(self, event: VerifiedEvent) -> None:
        try:
            await self._store_call(self.deduplicator.release, event.event_id)
        except Exception:
            # Claim will be reclaimed after the claim timeout
            logger.exception(
                "[webhooks] failed to release claim",
                extra={"event_id": event.event_id, "event_type": event.event_type},
            )

    async def process(self, event: VerifiedEvent) -> ProcessResult:
        with bound_request_id(event.event_id):
            return await self._process(event)

    async def _process(self, event: VerifiedEvent) -> ProcessResult:
        log_extra = {"event_id": event.event_id, "event_type": event.event_type}

        claim = await self._store_call(self.deduplicator.claim, event.event_id, event.event_type)
        if claim == ClaimResult.ALREADY_PROCESSED:
            logger.info("[webhooks] duplicate delivery ignored", extra={**log_extra, "outcome": OUTCOME_DUPLICATE})
            return ProcessResult(event_id=event.event_id, outcome=OUTCOME_DUPLICATE)

        try:
            transition = await self.subscriptions.apply(event)
        except Exception:
            logger.exception("[webhooks] processing failed, releasing claim", extra=log_extra)
            await self._release(event)
            raise

        if transition.outcome in (OUTCOME_ORPHAN, OUTCOME_REJECTED):
            logger.warning(
                f"[webhooks] {transition.outcome}: {transition.reason}",
                extra={**log_extra, "outcome": transition.outcome},
            )

        try:
            await self._store_call(self.deduplicator.complete, event.event_id, transition.outcome)
        except Exception:
            # State is committed; the claim stays in processing until it goes stale
            logger.exception("[webhooks] failed to record outcome", extra={**log_extra, "outcome": transition.outcome})

        notifications = await self.dispatcher.dispatch(transition.intents)
        return ProcessResult(
            event_id=event.event_id,
            outcome=transition.outcome,
            intents=list(transition.intents),
            notifications=notifications,
        )
