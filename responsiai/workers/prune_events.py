"""Retention job for the processed webhook event log."""
from datetime import datetime, timedelta, timezone
import logging
from typing import Optional

from responsiai.core.config import CoreConfig, settings
from responsiai.core.database import get_database_url, init_engine
from responsiai.core.logging import configure_logging
from responsiai.core.retry import call_with_store_retry
from responsiai.features.events.store import EventStore, SqlEventStore

logger = logging.getLogger("responsiai.cleanup.events")


def prune_processed_events(
    store: EventStore,
    *,
    retention_days: int = 30,
    now: Optional[datetime] = None,
    retry_attempts: int = 3,
) -> dict:
    """Delete finalized events older than the retention window.

    Claims still in processing are never pruned.
    """
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
    deleted = call_with_store_retry(store.prune, cutoff, attempts=retry_attempts)
    logger.info(
        "[cleanup] processed events retention",
        extra={"retention_days": retention_days, "deleted": deleted},
    )
    return {"retention_days": retention_days, "cutoff": cutoff.isoformat(), "deleted": deleted}


def main() -> dict:
    configure_logging(settings.ENV)
    config = CoreConfig.from_settings(settings)
    url = get_database_url()
    if not url:
        raise SystemExit("DATABASE_URL is not configured")
    store = SqlEventStore(init_engine(url))
    return prune_processed_events(
        store,
        retention_days=config.event_retention_days,
        retry_attempts=config.store_retry_attempts,
    )


if __name__ == "__main__":
    result = main()
    print(result)
