"""Campaign model for email/SMS/push marketing campaigns."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from crm.models.base import Base, TimestampMixin

CAMPAIGN_TYPES = ("email", "sms", "push")
CAMPAIGN_STATUSES = ("draft", "scheduled", "running", "completed", "paused", "cancelled")


class Campaign(TimestampMixin, Base):
    """Campaign with its audience rules and a point-in-time audience size.

    ``audience_size`` is refreshed on create, rule update and start only; it
    is not kept in sync with later customer changes.
    """

    __tablename__ = "campaigns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft", index=True)

    # Message
    message_subject: Mapped[Optional[str]] = mapped_column(String(255))
    message_content: Mapped[str] = mapped_column(Text, nullable=False)
    message_template: Mapped[Optional[str]] = mapped_column(String(100))

    # Audience: ordered list of {field, operator, value, logic}
    audience_rules: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    audience_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completion_due_at: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)

    # Delivery stats
    sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delivered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    opened: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    clicked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unsubscribed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), index=True
    )
