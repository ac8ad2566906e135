"""Pytest configuration and fixtures."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from insurepay.core.deps import get_db, get_payment_provider
from insurepay.engine.engine import InsurancePaymentEngine, PaymentSessionRequest
from insurepay.engine.policy import InsurancePolicy
from insurepay.main import app
from insurepay.payments.fake_provider import FakeStripeProvider
from insurepay.persistence.base import init_models

FIXED_NOW = datetime(2025, 9, 1, 12, 0, 0, tzinfo=timezone.utc)
BASE_URL = "https://federation.test"


@pytest.fixture
def fake_provider() -> FakeStripeProvider:
    return FakeStripeProvider()


@pytest.fixture
def policy() -> InsurancePolicy:
    return InsurancePolicy(fee=150, currency="MAD", session_ttl_minutes=30)


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """
    File-backed SQLite with NullPool: every checkout opens a fresh connection,
    so the same database is usable from pytest-asyncio's loop and TestClient's.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'insurepay.db'}", poolclass=NullPool)

    # let SQLAlchemy emit BEGIN itself so SAVEPOINTs behave as they do on Postgres
    @event.listens_for(engine.sync_engine, "connect")
    def _no_implicit_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def engine(db, fake_provider, policy) -> InsurancePaymentEngine:
    return InsurancePaymentEngine(
        db=db,
        stripe=fake_provider,
        policy=policy,
        base_url=BASE_URL,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def session_request() -> PaymentSessionRequest:
    return PaymentSessionRequest(
        insured_party_id="a1",
        insured_party_name="Amina Benali",
        organization_id="club-7",
        organization_name="Club Atlas",
        period_id="2025",
        period_label="2025-2026",
        contact_email="parent@example.com",
    )


@pytest.fixture
def client(session_factory, fake_provider):
    async def _override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_db
    app.dependency_overrides[get_payment_provider] = lambda: fake_provider
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
