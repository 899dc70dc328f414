"""Helpers for retrying transient database failures (deadlock / lock wait)."""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, Protocol, TypeVar

from loguru import logger
from sqlalchemy.exc import DBAPIError, OperationalError

from crm.core.config import settings

T = TypeVar("T")
MYSQL_RETRIABLE_ERROR_CODES = {1205, 1213, 3572}
RETRIABLE_SQLSTATES = {"40001", "40P01"}
RETRIABLE_MESSAGES = ("deadlock", "lock wait timeout", "database is locked")


class _Rollbackable(Protocol):
    async def rollback(self) -> None: ...


def _extract_error_code(exc: DBAPIError) -> tuple[int | None, str | None]:
    orig = getattr(exc, "orig", None)
    if not orig:
        return None, None
    code = None
    sqlstate = getattr(orig, "sqlstate", None)
    if getattr(orig, "args", None):
        try:
            code = int(orig.args[0])
        except (TypeError, ValueError):
            code = None
    return code, sqlstate


def is_retriable(exc: DBAPIError) -> bool:
    code, sqlstate = _extract_error_code(exc)
    if code == 3572 and settings.DB_NOWAIT_LOCKS:
        return False  # NOWAIT conflicts surface as 409 instead
    if code in MYSQL_RETRIABLE_ERROR_CODES or sqlstate in RETRIABLE_SQLSTATES:
        return True
    message = str(getattr(exc, "orig", exc)).lower()
    return any(token in message for token in RETRIABLE_MESSAGES)


async def with_db_retry(
    session: _Rollbackable,
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int | None = None,
    base_delay: float | None = None,
    jitter: float | None = None,
    label: str = "db_operation",
) -> T:
    """Run ``operation`` with exponential backoff on deadlock/lock-wait errors."""

    attempts = attempts or settings.DB_RETRY_ATTEMPTS
    base_delay = base_delay if base_delay is not None else settings.DB_RETRY_BASE_DELAY
    jitter = jitter if jitter is not None else settings.DB_RETRY_JITTER
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except (OperationalError, DBAPIError) as exc:
            if not is_retriable(exc) or attempt == attempts:
                raise
            await session.rollback()
            sleep_for = base_delay * (2 ** (attempt - 1)) + random.uniform(0, jitter)
            logger.bind(
                operation=label,
                attempt=attempt,
                max_attempts=attempts,
                sleep=sleep_for,
                error=str(exc),
            ).warning("db_retry_deadlock")
            await asyncio.sleep(sleep_for)
    raise RuntimeError(f"{label} exhausted retries without raising")
