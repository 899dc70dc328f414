"""Customer payloads. Address and marketing preferences nest as in the dashboard."""

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import Field, field_validator, model_validator

from crm.schemas.common import CamelModel, PaginationOut, normalise_email, reject_null
from crm.schemas.order import OrderOut

CustomerStatus = Literal["active", "inactive", "blocked"]


class AddressIn(CamelModel):
    street: Optional[str] = Field(default=None, max_length=255)
    city: Optional[str] = Field(default=None, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    zip_code: Optional[str] = Field(default=None, max_length=20)
    country: Optional[str] = Field(default=None, max_length=100)


class PreferencesIn(CamelModel):
    email_marketing: bool = True
    sms_marketing: bool = False


class CustomerCreate(CamelModel):
    name: str = Field(min_length=2, max_length=100)
    email: str
    phone: Optional[str] = Field(default=None, max_length=50)
    total_spending: float = Field(default=0, ge=0)
    visits: int = Field(default=0, ge=0)
    last_purchase_date: Optional[datetime] = None
    registration_date: Optional[datetime] = None
    status: CustomerStatus = "active"
    tags: List[str] = Field(default_factory=list)
    address: Optional[AddressIn] = None
    preferences: Optional[PreferencesIn] = None

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        return normalise_email(v)


class CustomerUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    email: Optional[str] = None
    phone: Optional[str] = Field(default=None, max_length=50)
    total_spending: Optional[float] = Field(default=None, ge=0)
    visits: Optional[int] = Field(default=None, ge=0)
    last_purchase_date: Optional[datetime] = None
    status: Optional[CustomerStatus] = None
    tags: Optional[List[str]] = None
    address: Optional[AddressIn] = None
    preferences: Optional[PreferencesIn] = None
    expected_updated_at: Optional[datetime] = None

    @field_validator("email")
    @classmethod
    def check_optional_email(cls, v: Optional[str]) -> str:
        return normalise_email(reject_null(v))

    @field_validator("name", "total_spending", "visits", "status", "address", "preferences")
    @classmethod
    def check_not_null(cls, v):
        return reject_null(v)


class AddressOut(CamelModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class PreferencesOut(CamelModel):
    email_marketing: bool
    sms_marketing: bool


class CustomerOut(CamelModel):
    id: int
    name: str
    email: str
    phone: Optional[str] = None
    total_spending: float
    visits: int
    last_purchase_date: Optional[datetime] = None
    registration_date: datetime
    status: str
    tags: List[str] = Field(default_factory=list)
    address: AddressOut
    preferences: PreferencesOut
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
            "email": data.email,
            "phone": data.phone,
            "total_spending": data.total_spending or 0,
            "visits": data.visits or 0,
            "last_purchase_date": data.last_purchase_date,
            "registration_date": data.registration_date,
            "status": data.status,
            "tags": data.tags or [],
            "address": {
                "street": data.street,
                "city": data.city,
                "state": data.state,
                "zip_code": data.zip_code,
                "country": data.country,
            },
            "preferences": {
                "email_marketing": data.email_marketing,
                "sms_marketing": data.sms_marketing,
            },
            "created_at": data.created_at,
            "updated_at": data.updated_at,
        }


class CustomerListOut(CamelModel):
    customers: List[CustomerOut]
    pagination: PaginationOut


class CustomerSummaryOut(CamelModel):
    id: int
    name: str
    email: str
    total_spending: float
    visits: int
    registration_date: Optional[datetime] = None


class CustomerAnalyticsOut(CamelModel):
    total_customers: int
    active_customers: int
    inactive_customers: int
    top_customers: List[CustomerSummaryOut]
    recent_customers: List[CustomerSummaryOut]


class CustomerDetailOut(CamelModel):
    customer: CustomerOut
    recent_orders: List[OrderOut]
