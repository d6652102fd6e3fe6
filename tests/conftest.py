"""Pytest configuration and fixtures."""

import secrets

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from booth_waiting import models  # noqa: F401  (registers tables on Base)
from booth_waiting.config import settings
from booth_waiting.database import Base, get_db
from booth_waiting.ledger import QueueLedger
from booth_waiting.locks import booth_locks, visitor_locks
from booth_waiting.main import app
from booth_waiting.models import Booth, BoothStatus, User, UserRole
from booth_waiting.redis import get_redis
from booth_waiting.state_machine import WaitingStateMachine


@pytest.fixture(autouse=True)
def fresh_locks():
    """Each test runs on its own event loop; drop locks bound to the last one."""
    booth_locks.reset()
    visitor_locks.reset()
    yield
    booth_locks.reset()
    visitor_locks.reset()


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """File-backed SQLite so concurrent sessions really are separate connections."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'waiting.db'}",
        connect_args={"timeout": 15},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis_client():
    client = FakeAsyncRedis(decode_responses=True)
    await client.flushall()
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def ledger(db_session, redis_client) -> QueueLedger:
    return QueueLedger(db_session, redis_client)


@pytest.fixture
def machine(db_session, redis_client) -> WaitingStateMachine:
    return WaitingStateMachine(db_session, redis_client)


@pytest.fixture
def make_booth(db_session):
    async def _make(
        capacity: int = 1,
        status: BoothStatus = BoothStatus.OPEN,
        name: str = "Test Booth",
        university_name: str = "Test University",
    ) -> Booth:
        booth = Booth(
            name=name,
            university_name=university_name,
            capacity=capacity,
            status=status,
        )
        db_session.add(booth)
        await db_session.commit()
        return booth

    return _make


@pytest.fixture
def make_user(db_session):
    counter = {"n": 0}

    async def _make(role: UserRole = UserRole.VISITOR, managed_booth_id=None, nickname=None) -> User:
        counter["n"] += 1
        user = User(
            email=f"user{counter['n']}@example.com",
            nickname=nickname or f"user{counter['n']}",
            role=role,
            managed_booth_id=managed_booth_id,
            access_token=secrets.token_urlsafe(16),
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest_asyncio.fixture
async def client(session_factory, redis_client):
    """HTTP client against the app with the test database and fake Redis."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def override_get_redis():
        yield redis_client

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {user.access_token}"}

    return _headers


@pytest.fixture
def settings_with():
    """A copy of the live settings with some fields replaced."""

    def _with(**overrides):
        return settings.model_copy(update=overrides)

    return _with
