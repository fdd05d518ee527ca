"""
Shared fixtures.

The durable store is a throwaway SQLite file per test (aiosqlite, NullPool) so
concurrent sessions really are separate connections. Redis is an AsyncMock:
`redis_down` fails every call (forces the durable fallbacks), `redis_up`
accepts writes and answers reads with empty results.
"""
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from rescue_dispatch.config import Settings
from rescue_dispatch.database import Base
import rescue_dispatch.models  # noqa: F401  (registers all tables)

REDIS_METHODS = (
    "get", "mget", "setex", "delete", "exists", "expire",
    "geoadd", "geosearch", "zrem", "zadd",
    "zrangebyscore", "zremrangebyscore",
)


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite://",
        surge_pricing_enabled=True,
        local_timezone="UTC",
        psp_api_key="",
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def redis_down():
    mock = AsyncMock()
    for name in REDIS_METHODS:
        getattr(mock, name).side_effect = RedisConnectionError("redis unavailable")
    return mock


@pytest.fixture
def redis_up():
    mock = AsyncMock()
    mock.get.return_value = None
    mock.exists.return_value = 0
    mock.geosearch.return_value = []
    mock.mget.side_effect = lambda keys: [None] * len(keys)
    mock.zrangebyscore.return_value = []
    return mock


@pytest.fixture
def scheduler():
    """Records enqueued jobs instead of publishing them."""
    mock = AsyncMock()
    mock.enqueue.return_value = "job-1"
    return mock


@pytest.fixture
def notifier():
    return AsyncMock()
