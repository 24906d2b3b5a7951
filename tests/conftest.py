from decimal import Decimal
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import loyalty_engine.models  # noqa: F401
from loyalty_engine.app import create_app
from loyalty_engine.db.base import Base
from loyalty_engine.db.session import get_session
from loyalty_engine.observability.loyalty import get_loyalty_store
from loyalty_engine.services.loyalty import EarningEngine, ProgramRegistry


@pytest.fixture(autouse=True)
def reset_loyalty_store():
    store = get_loyalty_store()
    store.reset()
    yield store
    store.reset()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Separate connections per session so concurrent writers really contend."""

    database_path = tmp_path / "ledger.db"
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{database_path}",
        future=True,
        connect_args={"timeout": 5},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def merchant_id():
    return uuid4()


@pytest.fixture
def user_id():
    return uuid4()


async def _seed_program(factory, merchant_id, **config):
    async with factory() as session:
        return await ProgramRegistry(session).initialize(merchant_id, config)


async def _seed_points(factory, user_id, merchant_id, amount):
    async with factory() as session:
        return await EarningEngine(session).award_purchase_points(user_id, merchant_id, Decimal(str(amount)))


@pytest.fixture
def seed_program():
    """Create a program: ``await seed_program(factory, merchant_id, **config)``."""

    return _seed_program


@pytest.fixture
def seed_points():
    """Award purchase points: ``await seed_points(factory, user_id, merchant_id, amount)``."""

    return _seed_points
