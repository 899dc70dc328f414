"""Replay protection for order creation.

A client sends an ``Idempotency-Key`` header with ``POST /orders``. The first
request claims the key by inserting a pending row; when it commits, the row is
marked complete with the new order id. A retry with the same key then gets
that order back instead of charging the customer twice. A pending claim whose
owner died is taken over once it has been silent for the TTL.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Literal, Optional

from fastapi import HTTPException, Request, status
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.config import settings
from crm.core.db_errors import raise_on_lock_conflict
from crm.models.base import utcnow
from crm.models.idempotency_key import IdempotencyKey

HEADER = "Idempotency-Key"
MAX_KEY_LENGTH = 128
PENDING = "P"
COMPLETE = "C"
ResourceName = Literal["order"]

IDEMPOTENCY_TTL = timedelta(minutes=settings.IDEMPOTENCY_TTL_MINUTES)


class IdempotencyClaimState(str, Enum):
    NEW = "new"
    REPLAY = "replay"
    IN_PROGRESS = "in_progress"


@dataclass(slots=True)
class IdempotencyClaim:
    state: IdempotencyClaimState
    record: IdempotencyKey | None = None
    retry_after: int | None = None

    @property
    def replay_id(self) -> Optional[int]:
        """Id of the resource created by the original request, on replay."""

        if self.state is IdempotencyClaimState.REPLAY and self.record and self.record.resource_id:
            return int(self.record.resource_id)
        return None

    def raise_if_in_progress(self) -> None:
        if self.state is IdempotencyClaimState.IN_PROGRESS:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Another request with this {HEADER} is still running. Please retry shortly.",
                headers={"Retry-After": str(self.retry_after or 1)},
            )


def require_idempotency_key(request: Request) -> str:
    key = request.headers.get(HEADER, "").strip()
    if not key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{HEADER} header is required for this operation.",
        )
    if len(key) > MAX_KEY_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{HEADER} must be {MAX_KEY_LENGTH} characters or fewer.",
        )
    return key


def _seconds_left(record: IdempotencyKey, now: datetime) -> int:
    if record.pending_expires_at is None:
        return max(1, int(IDEMPOTENCY_TTL.total_seconds()))
    return max(1, int((record.pending_expires_at - now).total_seconds()))


async def _existing_claim(
    session: AsyncSession, idempotency_key: str, resource: ResourceName
) -> IdempotencyClaim:
    try:
        record = await session.scalar(
            select(IdempotencyKey)
            .where(IdempotencyKey.idempotency_key == idempotency_key)
            .with_for_update(nowait=settings.DB_NOWAIT_LOCKS)
        )
    except OperationalError as exc:
        raise_on_lock_conflict(exc)
    if record is None:
        # Lost a race with a rollback of the row we collided with.
        return IdempotencyClaim(IdempotencyClaimState.IN_PROGRESS, retry_after=1)
    if record.resource != resource:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"{HEADER} was already used for a different operation.",
        )

    now = utcnow()
    record.last_seen_at = now
    if record.status == COMPLETE and record.resource_id:
        await session.flush()
        return IdempotencyClaim(IdempotencyClaimState.REPLAY, record)
    if record.pending_expires_at is not None and record.pending_expires_at > now:
        await session.flush()
        return IdempotencyClaim(
            IdempotencyClaimState.IN_PROGRESS, record, retry_after=_seconds_left(record, now)
        )

    # Abandoned claim: take it over.
    record.status = PENDING
    record.pending_expires_at = now + IDEMPOTENCY_TTL
    await session.flush()
    return IdempotencyClaim(IdempotencyClaimState.NEW, record)


async def claim_idempotency_key(
    session: AsyncSession,
    *,
    idempotency_key: str,
    resource: ResourceName,
) -> IdempotencyClaim:
    """Claim ``idempotency_key`` inside the caller's transaction.

    ``NEW`` means the caller owns the key and must create the resource;
    ``REPLAY`` carries the id created earlier; ``IN_PROGRESS`` means another
    request holds a live claim.
    """

    now = utcnow()
    try:
        await session.execute(
            insert(IdempotencyKey).values(
                idempotency_key=idempotency_key,
                resource=resource,
                status=PENDING,
                last_seen_at=now,
                pending_expires_at=now + IDEMPOTENCY_TTL,
            )
        )
    except IntegrityError:
        return await _existing_claim(session, idempotency_key, resource)
    return IdempotencyClaim(IdempotencyClaimState.NEW)


async def bump_idempotency_heartbeat(session: AsyncSession, *, idempotency_key: str) -> None:
    """Push the claim's expiry out while the owner is still working."""

    now = utcnow()
    await session.execute(
        update(IdempotencyKey)
        .where(IdempotencyKey.idempotency_key == idempotency_key, IdempotencyKey.status == PENDING)
        .values(last_seen_at=now, pending_expires_at=now + IDEMPOTENCY_TTL)
    )


async def complete_idempotency_key(
    session: AsyncSession,
    *,
    idempotency_key: str,
    resource_id: str,
) -> None:
    await session.execute(
        update(IdempotencyKey)
        .where(IdempotencyKey.idempotency_key == idempotency_key)
        .values(
            status=COMPLETE,
            resource_id=resource_id,
            last_seen_at=utcnow(),
            pending_expires_at=None,
        )
    )
