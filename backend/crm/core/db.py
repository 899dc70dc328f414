"""Async database session management helpers."""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ResourceClosedError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from crm.core.config import settings


def _engine_options(url: str) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True, "echo": settings.DEBUG}
    if make_url(url).get_backend_name() == "sqlite":
        return options
    options.update(
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        isolation_level=settings.DB_ISOLATION_LEVEL,
    )
    return options


engine = create_async_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

SessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency that yields an async database session."""

    async with SessionLocal() as session:
        yield session


@asynccontextmanager
async def repeatable_read_transaction(session: AsyncSession) -> AsyncGenerator[AsyncSession, None]:
    """Run the enclosed block in a single DB transaction at REPEATABLE READ.

    The session-level isolation and lock-wait overrides are MySQL specific;
    on other backends the block simply runs in one transaction.
    """

    if session.bind is None or session.bind.dialect.name != "mysql":
        if session.in_transaction():
            await session.rollback()
        async with session.begin():
            yield session
        return

    # ``AsyncSession.connection()`` is a coroutine returning an ``AsyncConnection``;
    # await it and manage the connection lifecycle explicitly.
    conn = await session.connection()
    try:
        prev_lock_wait = (
            await conn.exec_driver_sql("SELECT @@SESSION.innodb_lock_wait_timeout")
        ).scalar_one()
        prev_max_exec = (
            await conn.exec_driver_sql("SELECT @@SESSION.max_execution_time")
        ).scalar_one()

        await conn.exec_driver_sql(
            "SET SESSION TRANSACTION ISOLATION LEVEL REPEATABLE READ"
        )
        await conn.exec_driver_sql(
            f"SET SESSION innodb_lock_wait_timeout = {settings.INNODB_LOCK_WAIT_TIMEOUT_SEC}"
        )
        await conn.exec_driver_sql(
            f"SET SESSION MAX_EXECUTION_TIME = {settings.SELECT_MAX_EXECUTION_TIME_MS}"
        )

        if session.in_transaction():
            await session.rollback()

        try:
            async with session.begin():
                yield session
        finally:
            try:
                await conn.exec_driver_sql(
                    f"SET SESSION TRANSACTION ISOLATION LEVEL {settings.DB_ISOLATION_LEVEL}"
                )
                await conn.exec_driver_sql(
                    f"SET SESSION innodb_lock_wait_timeout = {int(prev_lock_wait)}"
                )
                await conn.exec_driver_sql(
                    f"SET SESSION MAX_EXECUTION_TIME = {int(prev_max_exec)}"
                )
            except ResourceClosedError:
                # The ORM may close the dedicated connection once the block ends
                # (e.g. after a retry-induced rollback); the overrides die with it.
                pass
    finally:
        await conn.close()
