"""Campaign CRUD, audience preview and the simulated start/pause lifecycle."""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.audit import client_addr, log_audit
from crm.core.cache import clear_cache_pattern, generate_cache_key, get_cache, set_cache
from crm.core.config import settings
from crm.core.db import get_session, repeatable_read_transaction
from crm.core.db_errors import raise_on_lock_conflict
from crm.core.db_retry import with_db_retry
from crm.core.deps import get_current_user
from crm.core.optimistic_lock import ensure_expected_timestamp
from crm.core.rate_limit import limiter
from crm.models.campaign import Campaign
from crm.models.user import User
from crm.schemas.audience import CustomerSample, PreviewAudienceRequest, PreviewAudienceResponse
from crm.schemas.campaign import (
    CampaignAnalyticsOut,
    CampaignCreate,
    CampaignListOut,
    CampaignOut,
    CampaignTotalsOut,
    CampaignUpdate,
)
from crm.schemas.common import PaginationOut
from crm.services.audience import count_audience, evaluate_audience, round_half_up, sample_audience
from crm.services.delivery import ANALYTICS_CACHE_PREFIX, DeliverySimulator
from crm.services.lifecycle import (
    ensure_deletable,
    ensure_editable,
    ensure_pausable,
    ensure_startable,
    pause_if_running,
)

router = APIRouter(prefix="/campaigns", tags=["campaigns"])

PREVIEW_SAMPLE_SIZE = 10

_SORT_COLUMNS = {
    "createdAt": Campaign.created_at,
    "updatedAt": Campaign.updated_at,
    "name": Campaign.name,
    "status": Campaign.status,
    "audienceSize": Campaign.audience_size,
    "scheduledAt": Campaign.scheduled_at,
}


def get_delivery_simulator(request: Request) -> DeliverySimulator:
    return request.app.state.delivery_simulator


async def _load_campaign(session: AsyncSession, campaign_id: int, *, for_update: bool = False) -> Campaign:
    stmt = select(Campaign).where(Campaign.id == campaign_id)
    if for_update:
        stmt = stmt.with_for_update(nowait=settings.DB_NOWAIT_LOCKS)
    campaign = await session.scalar(stmt)
    if not campaign:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Campaign not found")
    return campaign


def _rules_payload(rules) -> list[dict]:
    return [rule.model_dump(mode="json") for rule in rules]


@router.get("", response_model=CampaignListOut)
async def list_campaigns(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status_filter: Optional[Literal["draft", "scheduled", "running", "completed", "paused", "cancelled"]] = Query(
        None, alias="status"
    ),
    sort_by: Literal["createdAt", "updatedAt", "name", "status", "audienceSize", "scheduledAt"] = Query(
        "createdAt", alias="sortBy"
    ),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> CampaignListOut:
    filters = [Campaign.status == status_filter] if status_filter else []
    column = _SORT_COLUMNS[sort_by]
    order = column.asc() if sort_order == "asc" else column.desc()

    total = await session.scalar(select(func.count()).select_from(Campaign).where(*filters))
    rows = (
        await session.execute(
            select(Campaign)
            .where(*filters)
            .order_by(order, Campaign.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
    ).scalars().all()

    await log_audit(
        session,
        str(user.id),
        "campaign",
        None,
        "LIST",
        details={"page": page, "limit": limit, "status": status_filter},
        remote_addr=client_addr(request),
        independent_txn=True,
    )
    return CampaignListOut(
        campaigns=[CampaignOut.model_validate(row) for row in rows],
        pagination=PaginationOut.build(page, limit, int(total or 0)),
    )


@router.get("/analytics/overview", response_model=CampaignAnalyticsOut)
async def campaign_analytics(
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> CampaignAnalyticsOut:
    cache_key = generate_cache_key(ANALYTICS_CACHE_PREFIX)
    cached = await get_cache(cache_key)
    if cached is not None:
        return CampaignAnalyticsOut.model_validate(cached)

    counts = dict(
        (await session.execute(select(Campaign.status, func.count()).group_by(Campaign.status))).all()
    )
    sent, delivered, opened, clicked, failed = (
        await session.execute(
            select(
                func.coalesce(func.sum(Campaign.sent), 0),
                func.coalesce(func.sum(Campaign.delivered), 0),
                func.coalesce(func.sum(Campaign.opened), 0),
                func.coalesce(func.sum(Campaign.clicked), 0),
                func.coalesce(func.sum(Campaign.failed), 0),
            ).where(Campaign.status == "completed")
        )
    ).one()
    sent, delivered, opened, clicked, failed = (int(v or 0) for v in (sent, delivered, opened, clicked, failed))

    def rate(part: int, whole: int) -> float:
        return round_half_up(part / whole * 100, 2) if whole > 0 else 0.0

    recent = (
        await session.execute(select(Campaign).order_by(Campaign.created_at.desc(), Campaign.id.desc()).limit(5))
    ).scalars().all()

    result = CampaignAnalyticsOut(
        total_campaigns=sum(counts.values()),
        active_campaigns=counts.get("running", 0),
        completed_campaigns=counts.get("completed", 0),
        totals=CampaignTotalsOut(
            total_sent=sent,
            total_delivered=delivered,
            total_opened=opened,
            total_clicked=clicked,
            total_failed=failed,
            delivery_rate=rate(delivered, sent),
            open_rate=rate(opened, delivered),
            click_rate=rate(clicked, opened),
        ),
        recent_campaigns=[CampaignOut.model_validate(row) for row in recent],
    )
    await set_cache(cache_key, result.model_dump(mode="json", by_alias=True))
    return result


@router.post("/preview-audience", response_model=PreviewAudienceResponse)
@limiter.limit(settings.PREVIEW_RATE)
async def preview_audience(
    payload: PreviewAudienceRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> PreviewAudienceResponse:
    """Size of the audience the rules select, with the first members as a sample."""

    size = await count_audience(session, payload.audience_rules)
    sample = await sample_audience(session, payload.audience_rules, PREVIEW_SAMPLE_SIZE)
    logger.bind(rules=len(payload.audience_rules), audience_size=size).info("audience_preview")
    return PreviewAudienceResponse(
        audience_size=size,
        sample_customers=[CustomerSample.model_validate(customer) for customer in sample],
    )


@router.get("/{campaign_id}", response_model=CampaignOut)
async def get_campaign(
    campaign_id: int,
    request: Request,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> CampaignOut:
    campaign = await _load_campaign(session, campaign_id)
    await log_audit(
        session,
        str(user.id),
        "campaign",
        campaign_id,
        "VIEW",
        remote_addr=client_addr(request),
        independent_txn=True,
    )
    return CampaignOut.model_validate(campaign)


@router.post("", response_model=CampaignOut, status_code=status.HTTP_201_CREATED)
async def create_campaign(
    payload: CampaignCreate,
    request: Request,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> CampaignOut:
    audience_size = await count_audience(session, payload.audience_rules)
    campaign = Campaign(
        name=payload.name.strip(),
        description=payload.description,
        type=payload.type,
        status=payload.status,
        message_subject=payload.message.subject,
        message_content=payload.message.content,
        message_template=payload.message.template,
        audience_rules=_rules_payload(payload.audience_rules),
        audience_size=audience_size,
        scheduled_at=payload.scheduled_at,
        created_by=user.id,
    )
    session.add(campaign)
    await session.flush()
    await log_audit(
        session,
        str(user.id),
        "campaign",
        campaign.id,
        "CREATE",
        details={"audience_size": audience_size, "rules": len(payload.audience_rules)},
        remote_addr=client_addr(request),
    )
    await session.commit()
    await clear_cache_pattern(f"{ANALYTICS_CACHE_PREFIX}*")
    logger.bind(campaign_id=campaign.id, audience_size=audience_size).info("campaign_created")
    return CampaignOut.model_validate(campaign)


@router.put("/{campaign_id}", response_model=CampaignOut)
async def update_campaign(
    campaign_id: int,
    payload: CampaignUpdate,
    request: Request,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> CampaignOut:
    async def _update_once() -> CampaignOut:
        async with repeatable_read_transaction(session):
            campaign = await _load_campaign(session, campaign_id, for_update=True)
            ensure_editable(campaign)
            ensure_expected_timestamp(campaign.updated_at, payload.expected_updated_at)

            changes = payload.model_dump(
                exclude_unset=True, exclude={"expected_updated_at", "message", "audience_rules"}
            )
            for key, value in changes.items():
                setattr(campaign, key, value)
            if payload.message is not None:
                campaign.message_subject = payload.message.subject
                campaign.message_content = payload.message.content
                campaign.message_template = payload.message.template
            if payload.audience_rules is not None:
                campaign.audience_rules = _rules_payload(payload.audience_rules)
                campaign.audience_size = await count_audience(session, payload.audience_rules)
            await session.flush()

            await log_audit(
                session,
                str(user.id),
                "campaign",
                campaign_id,
                "UPDATE",
                details={"fields": sorted(payload.model_fields_set - {"expected_updated_at"})},
                remote_addr=client_addr(request),
            )
            return CampaignOut.model_validate(campaign)

    try:
        result = await with_db_retry(session, _update_once)
    except OperationalError as exc:
        raise_on_lock_conflict(exc)
    await clear_cache_pattern(f"{ANALYTICS_CACHE_PREFIX}*")
    return result


@router.delete("/{campaign_id}")
async def delete_campaign(
    campaign_id: int,
    request: Request,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
    simulator: DeliverySimulator = Depends(get_delivery_simulator),
) -> dict[str, str]:
    async def _delete_once() -> None:
        async with repeatable_read_transaction(session):
            campaign = await _load_campaign(session, campaign_id, for_update=True)
            ensure_deletable(campaign)
            await session.delete(campaign)
            await log_audit(
                session,
                str(user.id),
                "campaign",
                campaign_id,
                "DELETE",
                details={"status": campaign.status},
                remote_addr=client_addr(request),
            )

    try:
        await with_db_retry(session, _delete_once)
    except OperationalError as exc:
        raise_on_lock_conflict(exc)
    simulator.cancel_completion(campaign_id)
    await clear_cache_pattern(f"{ANALYTICS_CACHE_PREFIX}*")
    return {"message": "Campaign deleted successfully"}


@router.post("/{campaign_id}/start", response_model=CampaignOut)
async def start_campaign(
    campaign_id: int,
    request: Request,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
    simulator: DeliverySimulator = Depends(get_delivery_simulator),
) -> CampaignOut:
    """Resolve the audience, stamp simulated delivery stats and go ``running``."""

    async def _start_once():
        async with repeatable_read_transaction(session):
            campaign = await _load_campaign(session, campaign_id, for_update=True)
            ensure_startable(campaign)

            audience = await evaluate_audience(session, campaign.audience_rules or [])
            dispatch = simulator.dispatch(campaign_id, len(audience))

            campaign.status = "running"
            campaign.audience_size = len(audience)
            campaign.sent_at = dispatch.sent_at
            campaign.completed_at = None
            campaign.completion_due_at = dispatch.completion_due_at
            for key, value in dispatch.stats.as_dict().items():
                setattr(campaign, key, value)
            await session.flush()

            await log_audit(
                session,
                str(user.id),
                "campaign",
                campaign_id,
                "START",
                details=dispatch.stats.as_dict(),
                remote_addr=client_addr(request),
            )
            return campaign, dispatch

    try:
        campaign, dispatch = await with_db_retry(session, _start_once)
    except OperationalError as exc:
        raise_on_lock_conflict(exc)
    simulator.schedule_completion(dispatch)
    await clear_cache_pattern(f"{ANALYTICS_CACHE_PREFIX}*")
    return CampaignOut.model_validate(campaign)


@router.post("/{campaign_id}/pause", response_model=CampaignOut)
async def pause_campaign(
    campaign_id: int,
    request: Request,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
    simulator: DeliverySimulator = Depends(get_delivery_simulator),
) -> CampaignOut:
    async def _pause_once() -> None:
        async with repeatable_read_transaction(session):
            campaign = await _load_campaign(session, campaign_id, for_update=True)
            ensure_pausable(campaign)
            if not await pause_if_running(session, campaign_id):
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Only running campaigns can be paused",
                )
            await log_audit(
                session,
                str(user.id),
                "campaign",
                campaign_id,
                "PAUSE",
                remote_addr=client_addr(request),
            )

    try:
        await with_db_retry(session, _pause_once)
    except OperationalError as exc:
        raise_on_lock_conflict(exc)
    simulator.cancel_completion(campaign_id)
    await clear_cache_pattern(f"{ANALYTICS_CACHE_PREFIX}*")

    campaign = await _load_campaign(session, campaign_id)
    await session.refresh(campaign)
    return CampaignOut.model_validate(campaign)
