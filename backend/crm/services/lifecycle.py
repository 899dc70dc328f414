"""Campaign state preconditions and compare-and-swap status transitions."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import HTTPException
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from crm.models.base import utcnow
from crm.models.campaign import Campaign

EDIT_BLOCKED = frozenset({"running", "completed"})
DELETE_BLOCKED = frozenset({"running"})
STARTABLE = frozenset({"draft", "scheduled"})
PAUSABLE = frozenset({"running"})


def ensure_editable(campaign: Campaign) -> None:
    if campaign.status in EDIT_BLOCKED:
        raise HTTPException(status_code=400, detail="Cannot edit running or completed campaigns")


def ensure_deletable(campaign: Campaign) -> None:
    if campaign.status in DELETE_BLOCKED:
        raise HTTPException(status_code=400, detail="Cannot delete running campaigns")


def ensure_startable(campaign: Campaign) -> None:
    if campaign.status not in STARTABLE:
        raise HTTPException(status_code=400, detail="Campaign cannot be started")


def ensure_pausable(campaign: Campaign) -> None:
    if campaign.status not in PAUSABLE:
        raise HTTPException(status_code=400, detail="Only running campaigns can be paused")


async def complete_if_running(
    session: AsyncSession, campaign_id: int, now: Optional[datetime] = None
) -> bool:
    """``running -> completed`` only if the row is still running."""

    now = now or utcnow()
    result = await session.execute(
        update(Campaign)
        .where(Campaign.id == campaign_id, Campaign.status == "running")
        .values(status="completed", completed_at=now, completion_due_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def pause_if_running(session: AsyncSession, campaign_id: int) -> bool:
    result = await session.execute(
        update(Campaign)
        .where(Campaign.id == campaign_id, Campaign.status == "running")
        .values(status="paused", completion_due_at=None, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def complete_due_campaigns(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """Complete every running campaign whose completion is overdue.

    Returns the number of campaigns transitioned.
    """

    now = now or utcnow()
    result = await session.execute(
        update(Campaign)
        .where(
            Campaign.status == "running",
            Campaign.completion_due_at.is_not(None),
            Campaign.completion_due_at <= now,
        )
        .values(status="completed", completed_at=now, completion_due_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
