from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import Field, model_validator

from crm.schemas.common import CamelModel, PaginationOut

OrderStatus = Literal["pending", "confirmed", "shipped", "delivered", "cancelled", "refunded"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
PaymentMethod = Literal["credit_card", "debit_card", "upi", "net_banking", "cash_on_delivery"]


class OrderItemIn(CamelModel):
    product_name: str = Field(min_length=1, max_length=255)
    quantity: int = Field(ge=1)
    price: float = Field(ge=0)


class ShippingAddressIn(CamelModel):
    street: Optional[str] = Field(default=None, max_length=255)
    city: Optional[str] = Field(default=None, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    zip_code: Optional[str] = Field(default=None, max_length=20)
    country: Optional[str] = Field(default=None, max_length=100)


class OrderCreate(CamelModel):
    customer_id: int
    items: List[OrderItemIn] = Field(min_length=1)
    total_amount: float = Field(ge=0)
    payment_method: PaymentMethod = "credit_card"
    payment_status: PaymentStatus = "pending"
    shipping_address: Optional[ShippingAddressIn] = None


class OrderStatusUpdate(CamelModel):
    status: OrderStatus


class OrderItemOut(CamelModel):
    product_name: str
    quantity: int
    price: float
    total: float


class OrderCustomerOut(CamelModel):
    id: int
    name: Optional[str] = None
    email: Optional[str] = None


class OrderOut(CamelModel):
    id: int
    order_number: str
    customer_id: int
    customer: Optional[OrderCustomerOut] = None
    items: List[OrderItemOut]
    total_amount: float
    status: str
    payment_status: str
    payment_method: str
    shipping_address: ShippingAddressIn
    order_date: datetime
    delivery_date: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="before")
    @classmethod
    def unpack_row(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return data
        return {
            "id": data.id,
            "order_number": data.order_number,
            "customer_id": data.customer_id,
            "items": [
                {
                    "product_name": item.product_name,
                    "quantity": item.quantity,
                    "price": item.price,
                    "total": item.total,
                }
                for item in data.items
            ],
            "total_amount": data.total_amount,
            "status": data.status,
            "payment_status": data.payment_status,
            "payment_method": data.payment_method,
            "shipping_address": {
                "street": data.shipping_street,
                "city": data.shipping_city,
                "state": data.shipping_state,
                "zip_code": data.shipping_zip_code,
                "country": data.shipping_country,
            },
            "order_date": data.order_date,
            "delivery_date": data.delivery_date,
            "created_at": data.created_at,
            "updated_at": data.updated_at,
        }


class OrderListOut(CamelModel):
    orders: List[OrderOut]
    pagination: PaginationOut


class MonthlyRevenueOut(CamelModel):
    year: int
    month: int
    revenue: float
    count: int


class OrderAnalyticsOut(CamelModel):
    total_orders: int
    pending_orders: int
    delivered_orders: int
    total_revenue: float
    recent_orders: List[OrderOut]
    monthly_revenue: List[MonthlyRevenueOut]
