"""
Shared fixtures: in-memory async SQLite and a seeded workspace.
"""
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from leadclock import models  # noqa: F401
from leadclock.models.workspace import Workspace
from tests.factories import FakeMessagingProvider


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def workspace(session) -> Workspace:
    workspace = Workspace(name="Acme", company_name="Acme Dental", sla_minutes=15)
    session.add(workspace)
    await session.commit()
    return workspace


@pytest.fixture
def messaging_provider():
    return FakeMessagingProvider()
