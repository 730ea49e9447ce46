"""Shared fixtures: in-memory redis, SQLite database, token cipher, factories."""

import time
import uuid
from datetime import timedelta
from typing import Dict, Optional

import pytest
import pytest_asyncio
from redis.exceptions import LockError, LockNotOwnedError
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from connector_api.core.token_cipher import TokenCipher
from connector_api.db.base import get_session_factory, init_db, utcnow
from connector_api.db.models import PlatformType, Store
from connector_api.repositories.connection_repository import ConnectionRepository
from connector_worker.models.sheet_sync import SheetOrder


class FakeLock:
    """Token lock with the acquire/release semantics of redis.asyncio.lock.Lock."""

    def __init__(self, redis, name, timeout=None, blocking=True):
        self.redis = redis
        self.name = name
        self.timeout = timeout
        self.blocking = blocking
        self.token: Optional[str] = None

    async def acquire(self):
        token = uuid.uuid4().hex
        if await self.redis.set(self.name, token, ex=self.timeout, nx=True):
            self.token = token
            return True
        return False

    async def release(self):
        if self.token is None:
            raise LockError("Cannot release an unlocked lock")
        token, self.token = self.token, None
        if self.redis.store.get(self.name) != token:
            raise LockNotOwnedError("Cannot release a lock that's no longer owned")
        await self.redis.delete(self.name)


class FakeRedis:
    """In-memory stand-in for the redis.asyncio calls the services make."""

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.ttl: Dict[str, Optional[int]] = {}

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.ttl[key] = ex
        return True

    async def get(self, key):
        return self.store.get(key)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if key in self.store:
                del self.store[key]
                self.ttl.pop(key, None)
                removed += 1
        return removed

    async def exists(self, *keys):
        return sum(1 for key in keys if key in self.store)

    def lock(self, name, timeout=None, blocking=True, **kwargs):
        return FakeLock(self, name, timeout=timeout, blocking=blocking)

    async def aclose(self):
        pass


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cipher():
    return TokenCipher(TokenCipher.generate_key())


@pytest_asyncio.fixture
async def engine():
    """SQLite in memory, one shared connection, real SAVEPOINT support."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Let SQLAlchemy emit BEGIN itself so nested transactions behave
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


@pytest.fixture
def connection_repository(session_factory):
    return ConnectionRepository(session_factory)


@pytest_asyncio.fixture
async def store(session_factory):
    store = Store(organization_id="org-1", name="Main store", is_active=True)
    async with session_factory() as session:
        session.add(store)
        await session.commit()
    return store


@pytest.fixture
def make_connection(connection_repository, cipher):
    """Create an ACTIVE Google Sheets connection with encrypted tokens."""

    async def _make(
        access_token: str = "access-old",
        refresh_token: Optional[str] = "refresh-old",
        expires_in: Optional[timedelta] = timedelta(hours=1),
        organization_id: str = "org-1",
    ):
        return await connection_repository.create(
            platform_type=PlatformType.GOOGLE_SHEETS,
            owner_id="user-1",
            organization_id=organization_id,
            access_token=cipher.encrypt(access_token),
            refresh_token=cipher.encrypt(refresh_token) if refresh_token else None,
            token_expires_at=utcnow() + expires_in if expires_in is not None else None,
            scopes=["sheets"],
        )

    return _make


def make_sheet_order(row_number: int = 2, **overrides) -> SheetOrder:
    """A row that passes default validation."""
    values = dict(
        row_number=row_number,
        date="2024-01-10",
        customer_name="Ahmed Ali",
        phone="0661827394",
        address="12 Rue Atlas",
        city="Casablanca",
        product_name="Widget",
        price=100.0,
        product_quantity=1,
    )
    values.update(overrides)
    return SheetOrder(**values)


class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self, now: Optional[float] = None):
        self.now = now if now is not None else time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds
