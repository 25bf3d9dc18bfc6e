"""
tests/conftest.py
Shared fixtures: a throwaway SQLite database per test, an in-memory Redis
stand-in, a patched Celery dispatcher, and a few users and a provider.
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./fachowcy-test.db")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "rzp_test_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "rzp_webhook_secret")
os.environ.setdefault("APP_ENV", "test")

import time
import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config.database import Base, get_db, get_session_factory
from config.redis_client import get_redis
from main import app
from services.booking.snapshots import pricing_for
from services.booking.state_machine import generate_booking_hash
from shared.models.models import (
    Booking,
    BookingSource,
    BookingStatus,
    Provider,
    ProviderStatus,
    User,
    UserRole,
    utcnow,
)
from shared.utils.security import create_access_token
from tasks.celery_app import celery_app

POZNAN = (52.4064, 16.9252)


class FakeRedis:
    """The handful of redis.asyncio commands the app uses, kept in a dict."""

    def __init__(self):
        self.store = {}
        self.expiry = {}

    def _alive(self, key):
        deadline = self.expiry.get(key)
        if deadline is not None and deadline < time.time():
            self.store.pop(key, None)
            self.expiry.pop(key, None)
        return key in self.store

    async def get(self, key):
        return self.store.get(key) if self._alive(key) else None

    async def set(self, key, value, ex=None):
        self.store[key] = value
        if ex:
            self.expiry[key] = time.time() + ex

    async def setex(self, key, ttl, value):
        await self.set(key, value, ex=ttl)

    async def delete(self, *keys):
        return sum(1 for k in keys if self.store.pop(k, None) is not None)

    async def exists(self, key):
        return 1 if self._alive(key) else 0

    async def incr(self, key):
        value = int(self.store.get(key, 0)) + 1
        self.store[key] = value
        return value

    async def expire(self, key, seconds):
        self.expiry[key] = time.time() + seconds

    async def ping(self):
        return True


# ── Database ──────────────────────────────────────────────────

@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture(autouse=True)
def sent_tasks(monkeypatch):
    """Record Celery dispatches instead of talking to a broker."""
    send_task = MagicMock()
    monkeypatch.setattr(celery_app, "send_task", send_task)
    return send_task


@pytest_asyncio.fixture
async def client(session_factory, fake_redis):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_redis] = lambda: fake_redis

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    simulator = getattr(app.state, "simulator", None)
    if simulator is not None:
        await simulator.stop()
        app.state.simulator = None


# ── Users ─────────────────────────────────────────────────────

async def make_user(db: AsyncSession, name: str, role: UserRole = UserRole.CLIENT, **kwargs) -> User:
    user = User(
        id=uuid.uuid4(),
        email=f"{name.lower().replace(' ', '.')}.{uuid.uuid4().hex[:6]}@example.com",
        display_name=name,
        role=role,
        **kwargs,
    )
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def client_user(db) -> User:
    return await make_user(db, "Anna Kowalska")


@pytest_asyncio.fixture
async def other_user(db) -> User:
    return await make_user(db, "Piotr Nowak")


@pytest_asyncio.fixture
async def pro_user(db) -> User:
    return await make_user(db, "Jan Hydraulik", UserRole.PROFESSIONAL)


@pytest_asyncio.fixture
async def admin_user(db) -> User:
    return await make_user(db, "Admin", UserRole.ADMIN)


async def make_provider(
    db: AsyncSession,
    user: User,
    lat: float = POZNAN[0],
    lng: float = POZNAN[1],
    categories=("Hydraulik",),
    base_price: str = "150.00",
) -> Provider:
    provider = Provider(
        user_id=user.id,
        display_name=user.display_name,
        categories=list(categories),
        base_price=Decimal(base_price),
        price_unit="hour",
        address="Stary Rynek 1, Poznań",
        rating=4.5,
        live_status=ProviderStatus(is_online=True, is_busy=False, last_seen=utcnow()),
    )
    provider.relocate(lat, lng)
    provider.live_status.relocate(lat, lng)
    db.add(provider)
    await db.commit()
    return provider


@pytest_asyncio.fixture
async def provider(db, pro_user) -> Provider:
    return await make_provider(db, pro_user)


async def make_booking(
    db: AsyncSession,
    client: User,
    provider: Provider,
    status: BookingStatus = BookingStatus.COMPLETED,
    **kwargs,
) -> Booking:
    now = utcnow()
    values = dict(
        booking_hash=generate_booking_hash(),
        source=BookingSource.DIRECT,
        client_id=client.id,
        host_id=provider.user_id,
        provider_id=provider.id,
        status=status,
        status_history=[{"status": status.value, "changed_at": now.isoformat(), "changed_by": "test", "reason": None}],
        pricing=pricing_for(provider.base_price),
        client_snapshot={"display_name": client.display_name, "avatar_url": None},
        host_snapshot={"display_name": provider.display_name, "avatar_url": None, "rating_at_booking": 4.5},
        listing_snapshot={"title": "Hydraulik", "service_type": "Hydraulik", "price_at_booking": 150.0, "price_unit": "hour"},
        service_location={"lat": POZNAN[0], "lng": POZNAN[1], "address": "Stary Rynek 1, Poznań"},
    )
    if status == BookingStatus.COMPLETED:
        values.update(check_out_at=now, review_window_ends_at=now + timedelta(days=14))
    values.update(kwargs)
    booking = Booking(**values)
    db.add(booking)
    await db.commit()
    return booking


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(
        str(user.id),
        user.role.value if isinstance(user.role, UserRole) else user.role,
        email=user.email,
        name=user.display_name,
    )
    return {"Authorization": f"Bearer {token}"}
