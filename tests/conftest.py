"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any msgrelay import so the
module-level settings, engine and app pick them up.
"""

import hashlib
import hmac
import os
import tempfile
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault(
    "DATABASE_URL", "sqlite:///" + os.path.join(tempfile.gettempdir(), "msgrelay_test.db")
)
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_SECRET", "testsecret")
os.environ.setdefault("PROVIDER_DRY_RUN", "true")
os.environ.setdefault("ENABLED_PROVIDERS", "meta,gupshup,twilio,generic")
os.environ.setdefault("DEFAULT_PROVIDER", "generic")

# Clear settings cache before any app imports to ensure test env vars are used
from msgrelay.config import get_settings  # noqa: E402
get_settings.cache_clear()

from msgrelay import models  # noqa: E402,F401
from msgrelay.clock import FrozenClock  # noqa: E402
from msgrelay.dedup import InMemoryEventKeyCache  # noqa: E402
from msgrelay.ingestion import EventIngestionPipeline  # noqa: E402
from msgrelay.main import app, wire_services  # noqa: E402
from msgrelay.orchestrator import SendOrchestrator  # noqa: E402
from msgrelay.providers import ProviderResponse, build_registry  # noqa: E402
from msgrelay.quota import DatabaseQuotaLedger  # noqa: E402
from msgrelay.reconciliation import ReconciliationSweep  # noqa: E402
from msgrelay.records import get_record_by_key  # noqa: E402
from msgrelay.storage import Base, SessionLocal, engine  # noqa: E402

T0 = datetime(2025, 1, 15, 10, 0, 0)


def compute_signature(body: str, secret: str) -> str:
    """Compute HMAC-SHA256 signature for request body."""
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def accepted(provider_message_id: str):
    """Provider call that always accepts with the given id."""
    return lambda: ProviderResponse(accepted=True, provider_message_id=provider_message_id, provider_name="generic")


class RecordingPropagator:
    def __init__(self):
        self.calls = []

    def update_linked_status(self, link, canonical_status, timestamp):
        self.calls.append((link, canonical_status, timestamp))


@pytest.fixture(autouse=True)
def tables():
    """Fresh schema for every test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def propagator():
    return RecordingPropagator()


@pytest.fixture
def ledger(clock):
    ledger = DatabaseQuotaLedger(SessionLocal, clock=clock)
    ledger.set_balance("t1", 100)
    return ledger


@pytest.fixture
def registry(settings):
    return build_registry(settings)


@pytest.fixture
def orchestrator(ledger, settings, clock, propagator, registry):
    return SendOrchestrator(
        ledger,
        session_factory=SessionLocal,
        settings=settings,
        clock=clock,
        propagator=propagator,
        registry=registry,
    )


@pytest.fixture
def pipeline(registry, settings, clock, propagator):
    return EventIngestionPipeline(
        registry,
        session_factory=SessionLocal,
        cache=InMemoryEventKeyCache(clock=clock),
        settings=settings,
        clock=clock,
        propagator=propagator,
    )


@pytest.fixture
def sweep(settings, clock, propagator):
    return ReconciliationSweep(SessionLocal, settings=settings, clock=clock, propagator=propagator)


@pytest.fixture
def db():
    with SessionLocal() as session:
        yield session


def fetch_record(idempotency_key: str):
    """Read a record through a fresh session so no identity-map state leaks in."""
    with SessionLocal() as session:
        return get_record_by_key(session, idempotency_key)


def fetch_events(**filters):
    with SessionLocal() as session:
        return (
            session.query(models.DeliveryEvent)
            .filter_by(**filters)
            .order_by(models.DeliveryEvent.id.asc())
            .all()
        )


@pytest.fixture
def client(clock, ledger, propagator):
    """API client wired to the frozen clock and the test ledger."""
    wire_services(
        app,
        clock=clock,
        quota_ledger=ledger,
        propagator=propagator,
        cache=InMemoryEventKeyCache(clock=clock),
    )
    with TestClient(app) as test_client:
        yield test_client
