"""Order header/line models. Creating an order feeds customer spending stats."""

from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from crm.models.base import Base, TimestampMixin, utcnow

if TYPE_CHECKING:
    from crm.models.customer import Customer

ORDER_STATUSES = ("pending", "confirmed", "shipped", "delivered", "cancelled", "refunded")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")
PAYMENT_METHODS = ("credit_card", "debit_card", "upi", "net_banking", "cash_on_delivery")


class Order(TimestampMixin, Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    total_amount: Mapped[float] = mapped_column(Numeric(14, 2, asdecimal=False), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    payment_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default="credit_card")

    shipping_street: Mapped[Optional[str]] = mapped_column(String(255))
    shipping_city: Mapped[Optional[str]] = mapped_column(String(100))
    shipping_state: Mapped[Optional[str]] = mapped_column(String(100))
    shipping_zip_code: Mapped[Optional[str]] = mapped_column(String(20))
    shipping_country: Mapped[Optional[str]] = mapped_column(String(100))

    order_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)
    delivery_date: Mapped[Optional[datetime]] = mapped_column(DateTime)

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.line_no",
    )
    customer: Mapped["Customer"] = relationship(back_populates="orders", lazy="raise")


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[float] = mapped_column(Numeric(14, 2, asdecimal=False), nullable=False)
    total: Mapped[float] = mapped_column(Numeric(14, 2, asdecimal=False), nullable=False)

    order: Mapped[Order] = relationship(back_populates="items")
