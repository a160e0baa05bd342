"""
Shared fixtures.

Environment is set before anything under app/ is imported: settings are
read once at import time.
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_JSON"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["WORKER_ENABLED"] = "false"
os.environ["CALENDLY_WEBHOOK_SIGNING_KEY"] = "calendly-test-key"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_primary"
os.environ["STRIPE_WEBHOOK_SECRET_SECONDARY"] = "whsec_test_secondary"
os.environ["STRIPE_API_KEYS"] = "sk_test_primary,sk_test_backup"
os.environ["CALENDLY_API_TOKENS"] = "cal_token_primary"
os.environ["ADMIN_API_TOKEN"] = "admin-test-token"
os.environ["TRANSITION_RETRY_BASE_DELAY"] = "0"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import settings as app_settings
from app.database import Base
from app import models  # noqa: F401
from app.services.booking_events import BookingEventBus
from app.services.reconciliation import ReconciliationCoordinator
from app.services.signature_verifier import SignatureVerifier
from app.utils.db_helpers import KeyedLock


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return app_settings


@pytest.fixture
def event_bus():
    return BookingEventBus()


@pytest.fixture
def published(event_bus):
    received = []
    event_bus.subscribe(received.append)
    return received


@pytest.fixture
def client(session_factory):
    """TestClient bound to the per-test database, without the lifespan."""
    from fastapi.testclient import TestClient
    from app.database import get_db
    from app.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    for name in ("credentials", "event_bus", "verifier", "provider_clients"):
        setattr(app.state, name, None)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def coordinator(db, event_bus, settings):
    return ReconciliationCoordinator(
        db,
        verifier=SignatureVerifier.from_settings(settings),
        event_bus=event_bus,
        settings=settings,
        locks=KeyedLock(),
        sleep=lambda _: None,
    )
