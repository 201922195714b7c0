"""
Pytest configuration and shared fixtures.

Settings are pinned through the environment before the app is imported so
the service runs against in-memory SQLite with sub-second payment timings.
"""
import os
import tempfile

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["PAYMENT_COMPLETION_DELAY"] = "0.05"
os.environ["PAYMENT_POLL_INTERVAL"] = "0.01"
os.environ["PAYMENT_TIMEOUT"] = "2"
os.environ["JWT_SECRET"] = "test-jwt-secret-for-pytest-only"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="afyabora-uploads-")

from decimal import Decimal
from typing import AsyncGenerator, Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from afyabora import crud
from afyabora.config import settings
from afyabora.db import Base
from afyabora.models import Order, Role
from afyabora.schemas import Identity, LineItem


# ── Database Fixtures ────────────────────────────────────────────────


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ── Identities ───────────────────────────────────────────────────────


@pytest.fixture
def admin() -> Identity:
    return Identity(id="u_admin", role=Role.ADMIN)


@pytest.fixture
def customer() -> Identity:
    return Identity(id="u_customer", role=Role.CUSTOMER)


@pytest.fixture
def agent_a() -> Identity:
    return Identity(id="u_agent_a", role=Role.DELIVERY_AGENT)


@pytest.fixture
def agent_b() -> Identity:
    return Identity(id="u_agent_b", role=Role.DELIVERY_AGENT)


def make_token(user_id: str, role: str) -> str:
    return jwt.encode({"id": user_id, "role": role}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth_header(user_id: str, role: str) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


# ── Test Data Fixtures ────────────────────────────────────────────────


@pytest.fixture
def panadol_items() -> list[LineItem]:
    """Seven Panadol at 50 KSh: 350 KSh, 550 KSh with delivery."""
    return [LineItem(id="p1", name="Panadol Extra", price=50, quantity=7, category="Medicine")]


@pytest.fixture
def amoxicillin_items() -> list[LineItem]:
    return [LineItem(id="p3", name="Amoxicillin 500mg", price=300, quantity=1,
                     category="Medicine", requires_prescription=True)]


@pytest.fixture
async def pending_order(db_session, customer, panadol_items) -> Order:
    return await crud.create_order(
        user_id=customer.id,
        items=panadol_items,
        total_amount=Decimal("550"),
        shipping_address="Kenyatta Avenue 12, Nairobi",
        session=db_session,
    )


# ── HTTP ─────────────────────────────────────────────────────────────


@pytest.fixture
def test_client() -> Generator[TestClient, None, None]:
    """FastAPI test client; each client gets a fresh in-memory database."""
    from afyabora.main import app

    with TestClient(app) as client:
        yield client
