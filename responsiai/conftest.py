# responsiai/conftest.py
import json
import time

import pytest

from responsiai.core.config import CoreConfig
from responsiai.core.container import build_container
from responsiai.core.database import build_engine, create_all_tables, drop_all_tables
from responsiai.features.billing.verifier import sign_payload
from responsiai.features.notifications.sinks import LogSink
from responsiai.models.user import User

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def core_config():
    """Config with fast retries so failure paths don't sleep."""
    return CoreConfig(
        env="test",
        webhook_secret=WEBHOOK_SECRET,
        stripe_secret_key=None,
        price_ids=(("pro", "price_pro"), ("unlimited", "price_unlimited")),
        app_url="https://app.test",
        webhook_workers=2,
        webhook_queue_size=10,
        webhook_inline_processing=True,
        webhook_requeue_attempts=3,
        webhook_requeue_base_seconds=0,
        store_retry_attempts=3,
        store_retry_base_seconds=0,
        notify_retry_attempts=2,
    )


@pytest.fixture
def sqlite_engine():
    """In-memory SQLite shared across sessions (StaticPool)."""
    engine = build_engine("sqlite://")
    create_all_tables(engine)
    yield engine
    drop_all_tables(engine)
    engine.dispose()


@pytest.fixture
def log_sink():
    return LogSink()


@pytest.fixture
def container(core_config, log_sink):
    """In-memory container with a log sink."""
    return build_container(core_config, sink=log_sink)


@pytest.fixture
def alice(container):
    return container.repository.create_user(User(user_id="user_alice", email="alice@example.com", display_name="Alice"))


@pytest.fixture
def make_event():
    """Build a Stripe-shaped event envelope as raw bytes."""

    def _make(event_id, event_type, data_object, created=None):
        envelope = {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": created or int(time.time()),
            "data": {"object": data_object},
        }
        return json.dumps(envelope).encode("utf-8")

    return _make


@pytest.fixture
def signed():
    """Sign a raw payload with the test secret."""

    def _sign(raw, timestamp=None, secret=WEBHOOK_SECRET):
        return sign_payload(raw, secret, timestamp)

    return _sign
