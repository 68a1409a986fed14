import asyncio
import os
from datetime import datetime, timedelta
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

# In-memory store; no MongoDB needed
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "creditcore_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("ADMIN_EMAILS", "admin@example.com")


class FakeClock:
    """Deterministic utc clock (naive, whole seconds)."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 10, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def unlimited_settings(**overrides):
    from creditcore.core.config import PlanLimits, Settings
    limits = {plan: PlanLimits() for plan in ("trial", "basic", "pro", "elite")}
    kwargs = {"usage_limits": limits, "admin_emails_raw": "admin@example.com", **overrides}
    return Settings(**kwargs)


@pytest.fixture
def make_settings():
    return unlimited_settings


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncMongoMockClient, None]:
    from creditcore.db.init import init_db
    client = AsyncMongoMockClient()
    await init_db(client)
    yield client


@pytest_asyncio.fixture
async def ledger(db, clock):
    from creditcore.services.wallets import WalletLedger
    return WalletLedger(settings=unlimited_settings(), clock=clock)


@pytest_asyncio.fixture
async def tracker(db, clock):
    from creditcore.services.orders import OrderTracker
    return OrderTracker(clock=clock)


@pytest_asyncio.fixture
async def funded_wallet(ledger):
    """Factory: wallet for user_id holding `balance` points."""

    async def _make(user_id: str, balance: int):
        await ledger.initialize_wallet(user_id, f"{user_id}@example.com")
        if balance:
            await ledger.credit_points(user_id, balance, "seed", idempotency_key=f"seed:{user_id}")
        return await ledger.get_profile(user_id)

    return _make


@pytest_asyncio.fixture
async def client(db) -> AsyncGenerator[AsyncClient, None]:
    from creditcore.main import create_app
    app = create_app(db)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


def session_headers(uid: str, email: str, email_verified: bool = True) -> dict[str, str]:
    from creditcore.core.security import Identity, create_session_cookie
    from creditcore.deps import SESSION_COOKIE_NAME
    cookie = create_session_cookie(Identity(uid=uid, email=email, email_verified=email_verified))
    return {"Cookie": f"{SESSION_COOKIE_NAME}={cookie}"}


@pytest.fixture
def login():
    return session_headers


class _YieldingQuery:
    """Wraps a beanie query so other tasks run between the read and the write."""

    def __init__(self, query):
        self._query = query

    def __await__(self):
        return self._read().__await__()

    async def _read(self):
        await asyncio.sleep(0)
        doc = await self._query
        await asyncio.sleep(0)
        return doc

    def update(self, *args, **kwargs):
        return self._update(*args, **kwargs)

    async def _update(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await self._query.update(*args, **kwargs)


@pytest.fixture
def contended(monkeypatch):
    """Interleave concurrent wallet reads and conditional updates."""
    from creditcore.models.wallet import Wallet
    original = Wallet.find_one

    def find_one(cls, *args, **kwargs):
        return _YieldingQuery(original(*args, **kwargs))

    def enable():
        monkeypatch.setattr(Wallet, "find_one", classmethod(find_one))

    return enable
