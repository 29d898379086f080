"""Pytest fixtures shared by the unit and API tests.

The application lifespan is bypassed: fixtures build the same objects it
would (session factory, cache, invalidator, paginator, job runner) and
put them on ``app.state``. The database is a throwaway SQLite file so
concurrent sessions behave like separate connections.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from pcbcrm.app import create_app
from pcbcrm.cache.broadcast import CacheInvalidator
from pcbcrm.cache.categories import TTLPolicy
from pcbcrm.cache.tiered import TieredCache
from pcbcrm.config import Settings
from pcbcrm.database import create_schema, get_session_factory
from pcbcrm.jobs.ledger import JobLedger
from pcbcrm.jobs.runner import JobRunner
from pcbcrm.models.deal import Deal
from pcbcrm.pagination.cursor import CursorCodec
from pcbcrm.pagination.paginator import QueryPaginator
from pcbcrm.services.merchant_intelligence import IntelligenceProvider

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock for TTL and stale-job tests."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeIntelligenceProvider(IntelligenceProvider):
    """Counts fetches per section and fails the sections listed in ``failing``."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.failing: set[str] = set()

    async def fetch(self, merchant_id: str, section: str) -> Any:
        self.calls.append((merchant_id, section))
        if section in self.failing:
            raise httpx.ConnectError(f"{section} service down")
        version = sum(1 for call in self.calls if call == (merchant_id, section))
        return {"merchant_id": merchant_id, "section": section, "version": version}


async def echo_handler(input: dict, progress) -> dict:
    await progress({"stage": "echo", "percent": 50})
    return {"echo": input}


def make_settings(**overrides: Any) -> Settings:
    values = {
        "database_url": "sqlite+aiosqlite://",
        "redis_url": "redis://localhost:1/0",
        "cache_broadcast_enabled": False,
        "log_level": "DEBUG",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pcb.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def cache(settings, clock) -> TieredCache:
    return TieredCache(TTLPolicy.from_settings(settings), max_size=100, clock=clock)


@pytest.fixture
def paginator() -> QueryPaginator:
    return QueryPaginator(CursorCodec())


@pytest.fixture
def ledger(session_factory, clock) -> JobLedger:
    return JobLedger(session_factory, clock=clock)


@pytest.fixture
def provider() -> FakeIntelligenceProvider:
    return FakeIntelligenceProvider()


@pytest.fixture
async def app(settings, session_factory, cache, paginator, provider):
    app = create_app(settings)
    app.state.session_factory = session_factory
    app.state.redis = None
    app.state.cache = cache
    app.state.invalidator = CacheInvalidator(cache)
    app.state.paginator = paginator
    app.state.intelligence_provider = provider

    ledger = JobLedger(session_factory)
    runner = JobRunner(ledger, max_concurrent=2, timeout=5)
    runner.register("echo", echo_handler)
    app.state.job_ledger = ledger
    app.state.job_runner = runner

    yield app

    await runner.stop()


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def seed_deals(session_factory, count: int, **fields: Any) -> list[Deal]:
    """Insert ``count`` deals, one minute apart, and return them."""
    deals = []
    async with session_factory() as session:
        for i in range(count):
            values = {
                "business_name": f"Merchant {i:03d}",
                "estimated_monthly_volume": float((i % 5) * 10000),
                "deal_probability": (i * 7) % 101,
                "created_at": T0 + timedelta(minutes=i),
                "updated_at": T0 + timedelta(minutes=i),
            }
            values.update(fields)
            deal = Deal(**values)
            session.add(deal)
            deals.append(deal)
        await session.commit()
    return deals
