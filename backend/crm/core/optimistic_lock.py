"""Helpers for optimistic concurrency control."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import HTTPException, status


def _normalise(value: Optional[datetime]) -> Optional[datetime]:
    # MySQL DATETIME drops microseconds and tz; compare on that precision
    if value is None:
        return None
    return value.replace(microsecond=0, tzinfo=None)


def ensure_expected_timestamp(
    current: Optional[datetime], expected: Optional[datetime]
) -> None:
    """Raise HTTP 409 if the persisted ``updated_at`` differs from ``expected``.

    A missing ``expected`` value means the caller opted out of the check.
    """

    if expected is None:
        return
    if _normalise(current) == _normalise(expected):
        return
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail="Record has been updated by someone else. Please reload and try again.",
    )
