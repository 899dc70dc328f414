"""Pydantic models for audience rules, previews and segment insights."""

from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import ConfigDict, Field, field_validator

from crm.schemas.common import CamelModel

RuleValue = Union[int, float, str, bool, None]


class AudienceRule(CamelModel):
    """One comparison rule: ``field operator value``, joined by ``logic``.

    ``operator`` is deliberately a plain string: rules with an operator the
    compiler does not recognise are skipped, not rejected.
    """

    model_config = ConfigDict(frozen=True)

    field: str = Field(..., min_length=1, max_length=64)
    operator: str = Field(..., max_length=32)
    value: RuleValue = None
    logic: Optional[Literal["AND", "OR"]] = "AND"

    @field_validator("field", "operator", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v


class PreviewAudienceRequest(CamelModel):
    audience_rules: List[AudienceRule]


class CustomerSample(CamelModel):
    id: int
    name: str
    email: str
    total_spending: float
    visits: int
    last_purchase_date: Optional[datetime] = None


class PreviewAudienceResponse(CamelModel):
    audience_size: int
    sample_customers: List[CustomerSample]


class SegmentInsightsRequest(CamelModel):
    rules: List[AudienceRule]


class SegmentStatisticsOut(CamelModel):
    total_spending: float
    average_spending: float
    total_visits: int
    average_visits: float


class SegmentInsightsResponse(CamelModel):
    segment_size: int
    total_customers: int
    percentage: float
    statistics: SegmentStatisticsOut
    insights: List[str]
    sample_customers: List[CustomerSample]
