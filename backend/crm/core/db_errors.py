"""Shared helpers for database error handling."""

from __future__ import annotations

from typing import NoReturn

from fastapi import HTTPException, status
from sqlalchemy.exc import IntegrityError, OperationalError

# MySQL 3572: NOWAIT lock conflict; Postgres 55P03: lock_not_available
LOCK_CONFLICT_CODES = {3572}
LOCK_CONFLICT_SQLSTATES = {"55P03"}


def _error_code(exc: OperationalError | IntegrityError) -> int | None:
    orig = getattr(exc, "orig", None)
    if orig and getattr(orig, "args", None):
        try:
            return int(orig.args[0])
        except (TypeError, ValueError):
            return None
    return None


def raise_on_lock_conflict(exc: OperationalError) -> NoReturn:
    """Translate lock-nowait conflicts into HTTP 409, re-raise anything else."""

    code = _error_code(exc)
    sqlstate = getattr(getattr(exc, "orig", None), "sqlstate", None)
    message = str(getattr(exc, "orig", exc)).lower()
    if (
        code in LOCK_CONFLICT_CODES
        or sqlstate in LOCK_CONFLICT_SQLSTATES
        or "could not obtain lock" in message
        or "could not acquire" in message
    ):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Resource is locked by another request. Please retry shortly.",
        ) from exc
    raise exc


def raise_on_duplicate(exc: IntegrityError, detail: str) -> NoReturn:
    """Translate unique-key violations into HTTP 400 with ``detail``."""

    message = str(getattr(exc, "orig", exc)).lower()
    if _error_code(exc) == 1062 or "unique" in message or "duplicate" in message:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail) from exc
    raise exc
