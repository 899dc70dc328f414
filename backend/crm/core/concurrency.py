"""Concurrency helpers for bounding background thread usage."""

from __future__ import annotations

from typing import Any, Callable, TypeVar

import anyio

from crm.core.config import settings

T = TypeVar("T")

# bcrypt is CPU bound; cap the threads it may occupy at once
_security_sem = anyio.Semaphore(settings.SECURITY_MAX_CONCURRENCY)


async def run_in_thread_security(func: Callable[..., T], *args: Any) -> T:
    """Run a blocking password-hashing callable in a bounded worker thread."""

    async with _security_sem:
        return await anyio.to_thread.run_sync(func, *args)
