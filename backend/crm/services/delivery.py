"""Simulated campaign delivery and deferred completion.

Nothing is actually sent: :func:`simulate_delivery` derives a stats snapshot
from fixed rates and :class:`CompletionScheduler` flips the campaign to
``completed`` after a delay. A real dispatcher can replace
:class:`DeliverySimulator` without touching the campaign routes.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crm.core.cache import clear_cache_pattern
from crm.core.config import settings
from crm.core.db_retry import with_db_retry
from crm.models.base import utcnow
from crm.models.campaign import Campaign
from crm.services.lifecycle import complete_due_campaigns, complete_if_running

ANALYTICS_CACHE_PREFIX = "campaigns:analytics"


@dataclass(frozen=True)
class CampaignStats:
    sent: int = 0
    delivered: int = 0
    opened: int = 0
    clicked: int = 0
    failed: int = 0
    unsubscribed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def _floor_share(count: int, rate: float) -> int:
    # Decimal keeps floor(0.95 * 20) == 19 exact.
    return math.floor(Decimal(count) * Decimal(str(rate)))


def simulate_delivery(
    audience_size: int,
    *,
    delivery_rate: Optional[float] = None,
    open_rate: Optional[float] = None,
    click_rate: Optional[float] = None,
) -> CampaignStats:
    """Stats for sending to ``audience_size`` customers at fixed rates."""

    sent = max(int(audience_size), 0)
    delivered = _floor_share(sent, settings.SIMULATED_DELIVERY_RATE if delivery_rate is None else delivery_rate)
    opened = _floor_share(delivered, settings.SIMULATED_OPEN_RATE if open_rate is None else open_rate)
    clicked = _floor_share(opened, settings.SIMULATED_CLICK_RATE if click_rate is None else click_rate)
    return CampaignStats(
        sent=sent,
        delivered=delivered,
        opened=opened,
        clicked=clicked,
        failed=sent - delivered,
        unsubscribed=0,
    )


class CompletionScheduler:
    """One pending completion task per running campaign.

    Each task sleeps until the campaign's due time and then runs
    :func:`complete_if_running` in a fresh session. The status check is part
    of the UPDATE, so a task that outlives a pause or delete changes nothing.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._tasks: Dict[int, asyncio.Task] = {}

    @property
    def pending(self) -> frozenset:
        return frozenset(cid for cid, task in self._tasks.items() if not task.done())

    def task_for(self, campaign_id: int) -> Optional[asyncio.Task]:
        return self._tasks.get(campaign_id)

    def schedule(self, campaign_id: int, due_at: datetime) -> asyncio.Task:
        self.cancel(campaign_id)
        delay = max((due_at - utcnow()).total_seconds(), 0.0)
        task = asyncio.get_running_loop().create_task(
            self._complete_later(campaign_id, delay), name=f"campaign-complete-{campaign_id}"
        )
        self._tasks[campaign_id] = task
        logger.bind(campaign_id=campaign_id, delay_sec=round(delay, 3)).debug("campaign_completion_scheduled")
        return task

    def cancel(self, campaign_id: int) -> bool:
        task = self._tasks.pop(campaign_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _complete_later(self, campaign_id: int, delay: float) -> bool:
        try:
            await asyncio.sleep(delay)
            async with self._session_factory() as session:

                async def _complete() -> bool:
                    async with session.begin():
                        return await complete_if_running(session, campaign_id)

                completed = await with_db_retry(
                    session,
                    _complete,
                    attempts=settings.DB_RETRY_ATTEMPTS,
                    base_delay=settings.DB_RETRY_BASE_DELAY,
                    jitter=settings.DB_RETRY_JITTER,
                    label="campaign_completion",
                )
            if completed:
                await clear_cache_pattern(f"{ANALYTICS_CACHE_PREFIX}*")
            logger.bind(campaign_id=campaign_id, completed=completed).info("campaign_auto_completion")
            return completed
        except asyncio.CancelledError:
            logger.bind(campaign_id=campaign_id).debug("campaign_completion_cancelled")
            raise
        except Exception:
            logger.bind(campaign_id=campaign_id).opt(exception=True).error("campaign_completion_failed")
            return False
        finally:
            current = asyncio.current_task()
            if self._tasks.get(campaign_id) is current:
                self._tasks.pop(campaign_id, None)


@dataclass(frozen=True)
class Dispatch:
    campaign_id: int
    stats: CampaignStats
    sent_at: datetime
    completion_due_at: datetime


class DeliverySimulator:
    """Stand-in dispatcher: stats from fixed rates, completion after a delay."""

    def __init__(self, scheduler: CompletionScheduler, completion_delay: Optional[float] = None):
        self.scheduler = scheduler
        self.completion_delay = (
            settings.CAMPAIGN_COMPLETION_DELAY_SEC if completion_delay is None else completion_delay
        )

    def dispatch(self, campaign_id: int, audience_size: int) -> Dispatch:
        """Stats snapshot and completion due time for a campaign start."""

        sent_at = utcnow()
        dispatch = Dispatch(
            campaign_id=campaign_id,
            stats=simulate_delivery(audience_size),
            sent_at=sent_at,
            completion_due_at=sent_at + timedelta(seconds=self.completion_delay),
        )
        logger.bind(campaign_id=campaign_id, **dispatch.stats.as_dict()).info("campaign_dispatched")
        return dispatch

    def schedule_completion(self, dispatch: Dispatch) -> asyncio.Task:
        """Arm the deferred completion; call once the running state is committed."""

        return self.scheduler.schedule(dispatch.campaign_id, dispatch.completion_due_at)

    def cancel_completion(self, campaign_id: int) -> bool:
        return self.scheduler.cancel(campaign_id)


async def recover_running_campaigns(session: AsyncSession, scheduler: CompletionScheduler) -> int:
    """Complete overdue campaigns and re-arm the rest after a restart.

    Returns how many campaigns were completed by the sweep.
    """

    now = utcnow()
    async with session.begin():
        completed = await complete_due_campaigns(session, now)
    if completed:
        await clear_cache_pattern(f"{ANALYTICS_CACHE_PREFIX}*")
    rows = (
        await session.execute(
            select(Campaign.id, Campaign.completion_due_at).where(
                Campaign.status == "running", Campaign.completion_due_at.is_not(None)
            )
        )
    ).all()
    for campaign_id, due_at in rows:
        scheduler.schedule(campaign_id, due_at)
    logger.bind(completed=completed, rescheduled=len(rows)).info("campaign_recovery")
    return completed
