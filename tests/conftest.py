"""Shared fixtures: database session, API client, tenants and schemas."""

import copy
import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

# Rate limiting is configured at import time
os.environ["RATE_LIMIT_ENABLED"] = "false"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from caretaker.db.models import Base, TenantDB
from caretaker.main import app
from caretaker.models.enums import APIKeyScope
from caretaker.models.tenant import APIKeyCreate
from caretaker.services.auth import create_api_key, create_tenant

TEST_DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
BOOTSTRAP_KEY = "test-bootstrap-key"

TenantFactory = Callable[..., Awaitable[tuple[TenantDB, dict[str, str]]]]


@pytest.fixture
async def test_engine():
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with async_session() as session:
        yield session
        await session.rollback()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def client(session) -> AsyncGenerator[AsyncClient, None]:
    from caretaker.config import settings
    from caretaker.db import database

    original_auth_disabled = settings.auth_disabled
    original_bootstrap_key = settings.bootstrap_api_key
    settings.auth_disabled = False
    settings.bootstrap_api_key = BOOTSTRAP_KEY

    async def get_test_session() -> AsyncGenerator[AsyncSession, None]:
        yield session

    app.dependency_overrides[database.get_session] = get_test_session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    settings.auth_disabled = original_auth_disabled
    settings.bootstrap_api_key = original_bootstrap_key


@pytest.fixture
def make_tenant(session: AsyncSession) -> TenantFactory:
    """Create a tenant with one API key; returns (tenant, auth headers)."""

    async def _make(
        name: str, scopes: list[APIKeyScope] | None = None
    ) -> tuple[TenantDB, dict[str, str]]:
        tenant = await create_tenant(session, name)
        key = await create_api_key(
            session,
            tenant.id,
            APIKeyCreate(
                name=f"{name}-key",
                scopes=scopes or [APIKeyScope.READ, APIKeyScope.WRITE],
            ),
        )
        return tenant, {"Authorization": f"Bearer {key.key}"}

    return _make


@pytest.fixture
async def tenant_auth(make_tenant: TenantFactory) -> tuple[TenantDB, dict[str, str]]:
    return await make_tenant("acme")


@pytest.fixture
def auth_headers(tenant_auth: tuple[TenantDB, dict[str, str]]) -> dict[str, str]:
    return tenant_auth[1]


@pytest.fixture
def payments_schema() -> dict[str, Any]:
    """Live schema of a small payments integration."""
    return {
        "actions": {
            "create_charge": {
                "type": "object",
                "required": ["amount", "currency"],
                "properties": {
                    "amount": {"type": "string"},
                    "currency": {"type": "string"},
                    "metadata": {
                        "type": "object",
                        "properties": {"order_id": {"type": "string"}},
                    },
                },
            },
            "refund": {
                "type": "object",
                "required": ["charge_id"],
                "properties": {"charge_id": {"type": "string"}},
            },
        }
    }


@pytest.fixture
def amount_as_number(payments_schema: dict[str, Any]) -> dict[str, Any]:
    """The payments schema after upstream changed ``amount`` to a number."""
    schema = copy.deepcopy(payments_schema)
    schema["actions"]["create_charge"]["properties"]["amount"] = {"type": "number"}
    return schema


@pytest.fixture
def bootstrap_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {BOOTSTRAP_KEY}"}
