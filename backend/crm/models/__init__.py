"""ORM model exports for convenient imports elsewhere in the app."""

from crm.models.base import Base
from crm.models.audit_log import AuditLog
from crm.models.campaign import Campaign
from crm.models.customer import Customer
from crm.models.idempotency_key import IdempotencyKey
from crm.models.order import Order, OrderItem
from crm.models.user import User

__all__ = [
    "Base",
    "AuditLog",
    "Campaign",
    "Customer",
    "IdempotencyKey",
    "Order",
    "OrderItem",
    "User",
]
