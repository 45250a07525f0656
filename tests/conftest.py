"""
Global pytest fixtures for the Parley billing test suite.

Provides:
- Async database session on a throwaway SQLite file
- A mocked payment gateway
- Tenant / subscription factories
- ASGI client with auth tokens
"""
import os
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock
from uuid import UUID, uuid4

import pytest
import pytest_asyncio

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["AUTH_JWT_SECRET"] = "test-jwt-secret-for-testing-at-least-32-bytes"
os.environ["ENCRYPTION_KEY"] = "32-byte-long-test-encryption-key"
os.environ["GATEWAY_SECRET_KEY"] = "sk_test_parley"
os.environ["GATEWAY_WEBHOOK_SECRET"] = "whsec_test_parley"
os.environ["GATEWAY_API_BASE_URL"] = "https://gateway.test/v1"
os.environ["GATEWAY_PRICE_STARTER"] = "price_starter"
os.environ["GATEWAY_PRICE_PROFESSIONAL"] = "price_professional"
os.environ["GATEWAY_PRICE_ENTERPRISE"] = "price_enterprise"
os.environ["DB_SSL_MODE"] = "disable"
os.environ["RATELIMIT_ENABLED"] = "false"

from app.models.subscription import TenantSubscription  # noqa: E402
from app.models.tenant import Tenant  # noqa: E402
from app.modules.billing.domain.billing.gateway_client import (  # noqa: E402
    ChargeDetails,
    GatewayClient,
    GatewayResult,
)


# ============================================================================
# Async Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """Create async SQLite engine for testing using a temporary file."""
    from sqlalchemy.ext.asyncio import create_async_engine

    from app.shared.db.base import Base

    db_url = f"sqlite+aiosqlite:///{tmp_path / 'billing.sqlite'}"
    engine = create_async_engine(db_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator:
    """Provide an async session with proper cleanup."""
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest_asyncio.fixture
async def db(db_session):
    """Alias for db_session to match API tests."""
    return db_session


@pytest_asyncio.fixture(autouse=True)
async def reset_http_client():
    """Drop the shared httpx client so each test gets one bound to its own loop."""
    from app.shared.core.http import close_http_client

    yield
    await close_http_client()


# ============================================================================
# Gateway Fixtures
# ============================================================================

@pytest.fixture
def gateway() -> AsyncMock:
    """Mocked gateway that accepts every call."""
    mock = AsyncMock(spec=GatewayClient)
    mock.create_plan_change.return_value = GatewayResult(reference="sub_123", success=True)
    mock.cancel_subscription.return_value = GatewayResult(reference="sub_123", success=True)
    mock.reactivate_subscription.return_value = GatewayResult(
        reference="sub_456", success=True, data={}
    )
    mock.create_refund.return_value = GatewayResult(
        reference="re_123", success=True, data={"status": "succeeded"}
    )
    mock.retrieve_charge.return_value = ChargeDetails(
        reference="ch_123",
        amount_minor=9900,
        amount_refunded_minor=0,
        currency="USD",
        customer_ref="cus_123",
        status="succeeded",
    )
    return mock


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest_asyncio.fixture
async def tenant(db_session) -> Tenant:
    record = Tenant(id=uuid4(), name="Acme Support", contact_email="billing@acme.test")
    db_session.add(record)
    await db_session.commit()
    # Detach so a rollback in the code under test does not expire it.
    db_session.expunge(record)
    return record


@pytest.fixture
def subscription_factory(db_session):
    """Insert a subscription row directly, bypassing the lifecycle."""

    async def _create(
        tenant_id: UUID,
        status: str = "active",
        plan: str = "starter",
        *,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        gateway_subscription_id: str | None = "sub_123",
        gateway_customer_id: str | None = "cus_123",
        dunning_attempts: int = 0,
        cancel_at_period_end: bool = False,
        **extra: Any,
    ) -> TenantSubscription:
        now = datetime.now(timezone.utc)
        sub = TenantSubscription(
            tenant_id=tenant_id,
            status=status,
            plan=plan,
            current_period_start=period_start or now - timedelta(days=10),
            current_period_end=period_end or now + timedelta(days=20),
            gateway_subscription_id=gateway_subscription_id,
            gateway_customer_id=gateway_customer_id,
            dunning_attempts=dunning_attempts,
            cancel_at_period_end=cancel_at_period_end,
            **extra,
        )
        db_session.add(sub)
        await db_session.commit()
        return sub

    return _create


# ============================================================================
# API Fixtures
# ============================================================================

@pytest.fixture
def app():
    from app.main import app as parley_app

    return parley_app


@pytest_asyncio.fixture
async def async_client(app, db) -> AsyncGenerator:
    """Async test client for FastAPI. Overrides get_db to share the test session."""
    from httpx import ASGITransport, AsyncClient

    from app.shared.db.session import get_db

    async def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def auth_headers():
    """Build bearer headers for a role, optionally scoped to a tenant."""
    from app.shared.core.auth import create_access_token

    def _headers(role: str = "admin", tenant_id: UUID | None = None) -> dict[str, str]:
        claims: dict[str, Any] = {
            "sub": str(uuid4()),
            "email": f"{role}@parley.test",
            "role": role,
        }
        if tenant_id is not None:
            claims["tenant_id"] = str(tenant_id)
        return {"Authorization": f"Bearer {create_access_token(claims)}"}

    return _headers
