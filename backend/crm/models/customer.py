"""Customer model: the population audience rules are evaluated against."""

from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from crm.models.base import Base, TimestampMixin, utcnow

if TYPE_CHECKING:
    from crm.models.order import Order

CUSTOMER_STATUSES = ("active", "inactive", "blocked")


class Customer(TimestampMixin, Base):
    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50))

    total_spending: Mapped[float] = mapped_column(
        Numeric(14, 2, asdecimal=False), nullable=False, default=0, index=True
    )
    visits: Mapped[int] = mapped_column(Integer, nullable=False, default=0, index=True)
    last_purchase_date: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)
    registration_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", index=True)
    tags: Mapped[Optional[list]] = mapped_column(JSON)

    # Address
    street: Mapped[Optional[str]] = mapped_column(String(255))
    city: Mapped[Optional[str]] = mapped_column(String(100))
    state: Mapped[Optional[str]] = mapped_column(String(100))
    zip_code: Mapped[Optional[str]] = mapped_column(String(20))
    country: Mapped[Optional[str]] = mapped_column(String(100))

    # Preferences
    email_marketing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sms_marketing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    orders: Mapped[List["Order"]] = relationship(back_populates="customer", lazy="raise")
