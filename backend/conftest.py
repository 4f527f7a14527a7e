import os

# Configure the app before any module reads the environment
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_tuya.db"
os.environ["RATE_PER_KWH"] = "10"
os.environ["DEFAULT_TIMEZONE"] = "+05:30"
for var in ("TUYA_CLIENT_ID", "TUYA_CLIENT_SECRET", "TUYA_DEVICE_ID"):
    os.environ.pop(var, None)

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from models import Base, TelemetrySample


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """File-backed SQLite engine so concurrent sessions get their own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def add_samples(session_factory):
    """Insert (timestamp, status) pairs as telemetry samples."""

    async def _add(*samples):
        async with session_factory() as db:
            db.add_all([TelemetrySample.from_status(ts, status) for ts, status in samples])
            await db.commit()

    return _add


@pytest_asyncio.fixture
async def client(session_factory):
    """HTTP client for the app with the test database wired in."""
    from database import get_db, get_session_factory
    from main import app

    async def override_get_db():
        async with session_factory() as db:
            yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def make_status(power=0, voltage=0, current=0, switch=True):
    """Tuya status list with the given raw values."""
    return [
        {"code": "switch_1", "value": switch},
        {"code": "countdown_1", "value": 0},
        {"code": "cur_current", "value": current},
        {"code": "cur_power", "value": power},
        {"code": "cur_voltage", "value": voltage},
        {"code": "relay_status", "value": "memory"},
    ]
