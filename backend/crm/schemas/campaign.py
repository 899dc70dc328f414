"""Campaign payloads and responses."""

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import Field, field_validator, model_validator

from crm.schemas.audience import AudienceRule
from crm.schemas.common import CamelModel, PaginationOut, reject_null

CampaignType = Literal["email", "sms", "push"]


class MessageIn(CamelModel):
    subject: Optional[str] = Field(default=None, max_length=255)
    content: str = Field(min_length=1)
    template: Optional[str] = Field(default=None, max_length=100)


class CampaignCreate(CamelModel):
    name: str = Field(min_length=2, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    type: CampaignType
    message: MessageIn
    audience_rules: List[AudienceRule] = Field(default_factory=list)
    scheduled_at: Optional[datetime] = None
    status: Literal["draft", "scheduled"] = "draft"


class CampaignUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    type: Optional[CampaignType] = None
    message: Optional[MessageIn] = None
    audience_rules: Optional[List[AudienceRule]] = None
    scheduled_at: Optional[datetime] = None
    status: Optional[Literal["draft", "scheduled", "cancelled"]] = None
    expected_updated_at: Optional[datetime] = None

    @field_validator("name", "type", "status", "message", "audience_rules")
    @classmethod
    def check_not_null(cls, v):
        return reject_null(v)


class CampaignStatsOut(CamelModel):
    sent: int = 0
    delivered: int = 0
    opened: int = 0
    clicked: int = 0
    failed: int = 0
    unsubscribed: int = 0


class CampaignOut(CamelModel):
    id: int
    name: str
    description: Optional[str] = None
    type: str
    status: str
    message: MessageIn
    audience_rules: List[AudienceRule]
    audience_size: int
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    stats: CampaignStatsOut
    created_by: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="before")
    @classmethod
    def unpack_row(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return data
        return {
            "id": data.id,
            "name": data.name,
            "description": data.description,
            "type": data.type,
            "status": data.status,
            "message": {
                "subject": data.message_subject,
                "content": data.message_content,
                "template": data.message_template,
            },
            "audience_rules": data.audience_rules or [],
            "audience_size": data.audience_size or 0,
            "scheduled_at": data.scheduled_at,
            "sent_at": data.sent_at,
            "completed_at": data.completed_at,
            "stats": {
                "sent": data.sent,
                "delivered": data.delivered,
                "opened": data.opened,
                "clicked": data.clicked,
                "failed": data.failed,
                "unsubscribed": data.unsubscribed,
            },
            "created_by": data.created_by,
            "created_at": data.created_at,
            "updated_at": data.updated_at,
        }


class CampaignListOut(CamelModel):
    campaigns: List[CampaignOut]
    pagination: PaginationOut


class CampaignTotalsOut(CamelModel):
    total_sent: int
    total_delivered: int
    total_opened: int
    total_clicked: int
    total_failed: int
    delivery_rate: float
    open_rate: float
    click_rate: float


class CampaignAnalyticsOut(CamelModel):
    total_campaigns: int
    active_campaigns: int
    completed_campaigns: int
    totals: CampaignTotalsOut
    recent_campaigns: List[CampaignOut]
