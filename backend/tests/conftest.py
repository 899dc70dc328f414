import os

import pytest

# Ensure required environment variables are present before settings import
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("DB_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REDIS_ENABLED", "false")

from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from crm.core.db import get_session  # noqa: E402
from crm.core.rate_limit import limiter  # noqa: E402
from crm.core.security import create_access_token, get_password_hash  # noqa: E402
from crm.models import Base, Customer, User  # noqa: E402
from crm.models.base import utcnow  # noqa: E402
from crm.services.delivery import CompletionScheduler, DeliverySimulator  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'crm.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_customer(session_factory):
    """Insert a customer and return its id."""

    counter = {"n": 0}

    async def _make(**fields) -> int:
        counter["n"] += 1
        n = counter["n"]
        values = {
            "name": f"Customer {n}",
            "email": f"customer{n}@example.com",
            "total_spending": 0,
            "visits": 0,
            "status": "active",
            "registration_date": utcnow(),
        }
        values.update(fields)
        async with session_factory() as s:
            async with s.begin():
                customer = Customer(**values)
                s.add(customer)
            return customer.id

    return _make


@pytest.fixture
async def scheduler(session_factory):
    scheduler = CompletionScheduler(session_factory)
    yield scheduler
    await scheduler.shutdown()


@pytest.fixture
async def client(session_factory, scheduler):
    from crm.main import app

    async def _override_session():
        async with session_factory() as session:
            yield session

    previous_simulator = app.state.delivery_simulator
    app.dependency_overrides[get_session] = _override_session
    app.state.delivery_simulator = DeliverySimulator(scheduler, completion_delay=60)
    limiter.reset()
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()
        app.state.delivery_simulator = previous_simulator


@pytest.fixture
async def operator(session_factory):
    async with session_factory() as s:
        async with s.begin():
            user = User(
                name="Ops User",
                email="ops@example.com",
                password_hash=get_password_hash("secret123"),
                role="admin",
            )
            s.add(user)
    return user


@pytest.fixture
def auth_headers(operator):
    return {"Authorization": f"Bearer {create_access_token(str(operator.id))}"}
