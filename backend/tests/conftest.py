import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import models  # noqa: F401  (registers all tables on Base.metadata)
from models.base import Base
from services.alarm_triage import AlarmTriageEngine

from factories import FakeRedis, FakeSource, Ticker, client_factory_for


@pytest.fixture
async def session_factory(tmp_path):
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'triage.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    await db_engine.dispose()


@pytest.fixture
def fakes() -> dict[str, FakeSource]:
    return {"A": FakeSource(), "B": FakeSource(token="tok-b")}


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
async def triage_engine(session_factory, fakes, fake_redis):
    engine = AlarmTriageEngine(
        session_factory,
        fake_redis,
        client_factory=client_factory_for(fakes),
        interval=60,
        source_timeout=2.0,
        mirror_enabled=False,
        clock=Ticker(),
    )
    yield engine
    await engine.stop()
