"""Idempotency key tracking table for non-repeatable create requests."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CHAR, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from crm.models.base import Base, utcnow


class IdempotencyKey(Base):
    """Persists processed create requests (e.g. orders) for replay protection."""

    __tablename__ = "idempotency_keys"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_idempotency_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    resource: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(128))
    status: Mapped[str] = mapped_column(
        CHAR(1), nullable=False, default="P", comment="P=pending,C=complete"
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime)
    pending_expires_at: Mapped[datetime | None] = mapped_column(DateTime)
