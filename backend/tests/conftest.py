"""Shared pytest fixtures for test suite"""
import os
import pytest
import sys
from pathlib import Path
from typing import Generator
from unittest.mock import AsyncMock, patch
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
import fakeredis

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("FLUTTERWAVE_WEBHOOK_HASH", "test-webhook-hash")
os.environ.setdefault("FLUTTERWAVE_SECRET_KEY", "FLWSECK_TEST-secret")
os.environ.setdefault("FLUTTERWAVE_PUBLIC_KEY", "FLWPUBK_TEST-public")
os.environ.setdefault("ENTITLEMENT_LOCK_WAIT", "0.2")

from lnking.main import app
from lnking.db.session import get_db
from lnking.models import Base, Workspace, WorkspaceWebhook
from lnking.db import redis as redis_module

WEBHOOK_HASH = "test-webhook-hash"

# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)

    with patch.object(redis_module, '_client', fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # Disable OpenTelemetry, table creation on the real engine and the retry worker
        with patch('lnking.main.initialize_otel', return_value=False):
            with patch('lnking.main.instrument_sqlalchemy'):
                with patch('lnking.main.init_db'):
                    with patch('lnking.tasks.notification_worker.notification_worker_task', new=AsyncMock()):
                        with TestClient(app) as test_client:
                            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def workspace(db_session: Session) -> Workspace:
    """Free-plan workspace with id a1"""
    ws = Workspace(id="a1", name="Acme", slug="acme")
    db_session.add(ws)
    db_session.commit()
    db_session.refresh(ws)
    return ws


@pytest.fixture(scope="function")
def workspace_webhook(db_session: Session, workspace: Workspace) -> WorkspaceWebhook:
    """Receiver subscribed to sale and lead events"""
    hook = WorkspaceWebhook(
        id="wh_1",
        workspace_id=workspace.id,
        url="https://merchant.example.com/hooks",
        secret="whsec_test",
        triggers=["sale.created", "lead.created"]
    )
    db_session.add(hook)
    db_session.commit()
    return hook


def charge_body(tx_ref="lnking_u1_a1_pro_monthly_abc123", flw_ref="flw_1", email="buyer@example.com",
                amount=10000, currency="NGN", event="charge.completed"):
    """Flutterwave charge.completed notification body"""
    return {
        "event": event,
        "data": {
            "id": 4242,
            "tx_ref": tx_ref,
            "flw_ref": flw_ref,
            "amount": amount,
            "currency": currency,
            "status": "successful",
            "payment_type": "card",
            "customer": {
                "id": 99,
                "name": "Ada Buyer",
                "email": email,
                "phone_number": "08000000000"
            }
        }
    }
