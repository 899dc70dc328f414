from fastapi import APIRouter, Depends, Request
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.audit import client_addr, log_audit
from crm.core.config import settings
from crm.core.db import get_session
from crm.core.deps import get_current_user
from crm.core.rate_limit import limiter
from crm.models.user import User
from crm.schemas.audience import (
    CustomerSample,
    SegmentInsightsRequest,
    SegmentInsightsResponse,
    SegmentStatisticsOut,
)
from crm.services.audience import (
    build_insights,
    count_active_customers,
    round_half_up,
    sample_audience,
    segment_percentage,
    segment_statistics,
)

router = APIRouter(prefix="/segments", tags=["segments"])

INSIGHT_SAMPLE_SIZE = 5


@router.post("/insights", response_model=SegmentInsightsResponse)
@limiter.limit(settings.PREVIEW_RATE)
async def segment_insights(
    payload: SegmentInsightsRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> SegmentInsightsResponse:
    """Size, reach and spend profile of an ad-hoc segment."""

    stats = await segment_statistics(session, payload.rules)
    total_customers = await count_active_customers(session)
    percentage = segment_percentage(stats.size, total_customers)
    sample = await sample_audience(session, payload.rules, INSIGHT_SAMPLE_SIZE)

    await log_audit(
        session,
        str(user.id),
        "segment",
        None,
        "INSIGHTS",
        details={"rules": len(payload.rules), "segment_size": stats.size},
        remote_addr=client_addr(request),
        independent_txn=True,
    )
    logger.bind(segment_size=stats.size, total_customers=total_customers).info("segment_insights")
    return SegmentInsightsResponse(
        segment_size=stats.size,
        total_customers=total_customers,
        percentage=round_half_up(percentage, 2),
        statistics=SegmentStatisticsOut(**stats.rounded()),
        insights=build_insights(percentage, stats.average_spending, stats.average_visits),
        sample_customers=[CustomerSample.model_validate(customer) for customer in sample],
    )
