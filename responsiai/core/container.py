"""
Application wiring.

build_container() constructs every component once at startup from an
immutable CoreConfig. SQL stores are used when an engine is given, the
in-memory stores otherwise (local development without DATABASE_URL, tests).
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine

from responsiai.core.config import CoreConfig
from responsiai.core.database import create_all_tables
from responsiai.features.billing.provider import BillingProvider
from responsiai.features.billing.service import BillingService
from responsiai.features.events.dedup import EventDeduplicator
from responsiai.features.events.store import EventStore, InMemoryEventStore, SqlEventStore
from responsiai.features.notifications.dispatcher import NotificationDispatcher
from responsiai.features.notifications.sinks import Sink, build_sink
from responsiai.features.subscriptions.locks import KeyedLock
from responsiai.features.subscriptions.repository import (
    InMemorySubscriptionRepository,
    SqlSubscriptionRepository,
    SubscriptionRepository,
)
from responsiai.features.subscriptions.service import SubscriptionService
from responsiai.features.subscriptions.state_machine import SubscriptionStateMachine
from responsiai.features.usage.ledger import InMemoryUsageLedger, SqlUsageLedger, UsageLedger
from responsiai.features.usage.meter import UsageMeter
from responsiai.features.usage.service import Analyzer, MeteredAnalysisService
from responsiai.features.webhooks.pipeline import WebhookPipeline
from responsiai.workers.webhook_worker import WebhookWorkerPool

logger = logging.getLogger("responsiai")


@dataclass
class Container:
    config: CoreConfig
    engine: Optional[Engine]
    event_store: EventStore
    repository: SubscriptionRepository
    ledger: UsageLedger
    sink: Sink
    subscriptions: SubscriptionService
    meter: UsageMeter
    analyses: MeteredAnalysisService
    dispatcher: NotificationDispatcher
    billing: BillingService
    pipeline: WebhookPipeline
    workers: WebhookWorkerPool


def _default_provider(config: CoreConfig) -> Optional[BillingProvider]:
    if not config.billing_enabled:
        return None
    # Imported lazily so the stripe SDK is only loaded when billing is on
    from responsiai.features.billing.stripe_provider import StripeProvider

    return StripeProvider(config.stripe_secret_key)


def build_container(
    config: CoreConfig,
    engine: Optional[Engine] = None,
    *,
    sink: Optional[Sink] = None,
    provider: Optional[BillingProvider] = None,
    analyzer: Optional[Analyzer] = None,
) -> Container:
    if engine is not None:
        create_all_tables(engine)
        event_store = SqlEventStore(engine)
        repository = SqlSubscriptionRepository(engine)
        ledger = SqlUsageLedger(engine)
    else:
        logger.warning("DATABASE_URL not configured, using in-memory stores")
        event_store = InMemoryEventStore()
        repository = InMemorySubscriptionRepository()
        ledger = InMemoryUsageLedger()

    sink = sink or build_sink(config)
    provider = provider if provider is not None else _default_provider(config)

    subscriptions = SubscriptionService(
        repository,
        SubscriptionStateMachine(tier_for_price=config.tier_for_price),
        KeyedLock(),
        retry_attempts=config.store_retry_attempts,
        retry_base_seconds=config.store_retry_base_seconds,
    )
    meter = UsageMeter(
        ledger,
        repository,
        timezone_name=config.usage_timezone,
        retry_attempts=config.store_retry_attempts,
        retry_base_seconds=config.store_retry_base_seconds,
    )
    analyses = MeteredAnalysisService(meter, analyzer) if analyzer else MeteredAnalysisService(meter)
    dispatcher = NotificationDispatcher(
        sink,
        repository,
        app_url=config.app_url,
        retry_attempts=config.notify_retry_attempts,
    )
    pipeline = WebhookPipeline(
        config,
        EventDeduplicator(event_store, config.claim_timeout_seconds),
        subscriptions,
        dispatcher,
    )
    return Container(
        config=config,
        engine=engine,
        event_store=event_store,
        repository=repository,
        ledger=ledger,
        sink=sink,
        subscriptions=subscriptions,
        meter=meter,
        analyses=analyses,
        dispatcher=dispatcher,
        billing=BillingService(config, repository, provider),
        pipeline=pipeline,
        workers=WebhookWorkerPool(
            pipeline,
            config.webhook_workers,
            config.webhook_queue_size,
            requeue_attempts=config.webhook_requeue_attempts,
            requeue_base_seconds=config.webhook_requeue_base_seconds,
        ),
    )
