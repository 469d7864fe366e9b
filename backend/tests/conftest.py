"""
Pytest fixtures for billing_sync.

WHAT: An in-memory database per test, an app wired to that database, and
doubles for the payment gateway and identity provider.

WHY: No test talks to MercadoPago. Gateway behaviour is scripted per test
on mock_gateway, so provider outages and rejections are easy to stage.
"""

import pytest
import pytest_asyncio
from typing import AsyncGenerator
from unittest.mock import MagicMock
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool
from httpx import AsyncClient
from cryptography.fernet import Fernet

from billing_sync.main import create_app
from billing_sync.models.base import Base
from billing_sync.db.session import get_db
from billing_sync.core import config as config_module
from billing_sync.core.config import EntitlementConfig
from billing_sync.services.encryption_service import EncryptionService
from billing_sync.services.entitlement_cache import EntitlementCache
from billing_sync.services.identity_client import IdentityProviderClient
from billing_sync.services.payment_gateway import (
    PROVIDER_STATUS_MAP,
    PaymentGateway,
    ProviderSubscription,
    StatusProbe,
)


# SQLite keeps the suite free of a PostgreSQL dependency
TEST_ASYNC_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

STORED_TO_PROVIDER = {internal: provider for provider, internal in PROVIDER_STATUS_MAP.items()}


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """
    Fresh schema per test.

    StaticPool keeps every session (including the scheduler's own) on the
    one in-memory connection.
    """
    engine = create_async_engine(
        TEST_ASYNC_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """
    Shared session for the test and the code under test.

    WHY: Services commit between steps, so the test and the code under test
    share this one session; expire_on_commit=False keeps fixtures usable.
    """
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture
def entitlement_config() -> EntitlementConfig:
    """
    Entitlement timing for tests.

    WHY: Zero backoff and lookup delay keep retry paths instant.
    """
    return EntitlementConfig(
        cache_ttl_seconds=300,
        deadline_seconds=1.0,
        status_ttl_seconds=300,
        retry_backoff_seconds=0,
        lookup_retry_delay_seconds=0,
    )


@pytest.fixture
def cache() -> EntitlementCache:
    """Fresh entitlement cache per test."""
    return EntitlementCache(ttl_seconds=300)


@pytest.fixture
def mock_gateway() -> MagicMock:
    """
    Payment gateway double.

    WHY: spec=PaymentGateway turns every async method into an AsyncMock.
    Defaults describe a healthy provider: cancellations succeed and status
    probes echo the stored status with no timestamp (nothing to apply).
    Tests override individual methods as needed.
    """
    gateway = MagicMock(spec=PaymentGateway)

    async def cancel(provider_subscription_id):
        return ProviderSubscription(id=provider_subscription_id, status="cancelled", last_modified=None)

    async def probe(provider_subscription_id, stored_status=None):
        provider_status = STORED_TO_PROVIDER.get(stored_status, "")
        return StatusProbe(
            provider_subscription_id=provider_subscription_id,
            provider_status=provider_status,
            mapped_status=PROVIDER_STATUS_MAP.get(provider_status),
            stored_status=stored_status,
            last_modified=None,
        )

    gateway.cancel_subscription.side_effect = cancel
    gateway.probe_subscription_status.side_effect = probe
    gateway.validate_token.return_value = True
    return gateway


@pytest.fixture(autouse=True)
def encryption_key(monkeypatch) -> str:
    """
    Configure a fresh Fernet key for every test.

    WHY: Provider tokens are encrypted at rest; routes build their
    EncryptionService from settings at request time.
    """
    key = Fernet.generate_key().decode()
    monkeypatch.setattr(config_module.settings, "ENCRYPTION_KEY", key)
    return key


@pytest.fixture
def encryption(encryption_key) -> EncryptionService:
    return EncryptionService(encryption_key)


@pytest.fixture
def app(cache, mock_gateway, entitlement_config):
    """
    Application wired with test collaborators.

    WHY: ASGITransport does not run startup events, so app.state is filled
    here instead and the scheduler never starts.
    """
    application = create_app()
    application.state.entitlement_cache = cache
    application.state.payment_gateway = mock_gateway
    application.state.entitlement_config = entitlement_config
    application.state.identity_client = IdentityProviderClient(None, None)
    return application


@pytest_asyncio.fixture
async def client(app, db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """
    HTTP client bound to the test app in-process.

    Routes get the test's db_session, so assertions see what the request
    committed.
    """
    from httpx import ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
