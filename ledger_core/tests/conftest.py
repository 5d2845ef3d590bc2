
import os

# The application engine is built at import time; never point it at a real server in tests
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("RECONCILIATION_INTERVAL_SECONDS", "0")

import pytest
import pytest_asyncio
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from ledger_core.main import app
from ledger_core.db.session import get_db, get_session_factory
from ledger_core.models import Base
from ledger_core.services.reconciliation import ReconciliationLock, ReconciliationService

@pytest_asyncio.fixture(loop_scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    # One SQLite file per test; reconciliation opens several connections concurrently
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, expire_on_commit=False)

    await engine.dispose()

@pytest_asyncio.fixture(loop_scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session

@pytest.fixture
def reconciliation_service(session_factory) -> ReconciliationService:
    # Private lock and fast backoff so tests never wait on each other or on real delays
    return ReconciliationService(
        session_factory,
        lock=ReconciliationLock(),
        backoff_base_ms=1,
        backoff_max_ms=5,
    )

@pytest_asyncio.fixture(loop_scope="function")
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    # Override session dependencies
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    # Create transport with the app
    transport = ASGITransport(app=app)

    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
