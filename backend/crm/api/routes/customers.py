"""Customer master data endpoints."""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.audit import client_addr, log_audit
from crm.core.cache import clear_cache_pattern, generate_cache_key, get_cache, set_cache
from crm.core.config import settings
from crm.core.db import get_session, repeatable_read_transaction
from crm.core.db_errors import raise_on_duplicate, raise_on_lock_conflict
from crm.core.db_retry import with_db_retry
from crm.core.deps import get_current_user
from crm.core.optimistic_lock import ensure_expected_timestamp
from crm.models.base import utcnow
from crm.models.customer import Customer
from crm.models.order import Order, OrderItem
from crm.models.user import User
from crm.schemas.common import PaginationOut
from crm.schemas.customer import (
    CustomerAnalyticsOut,
    CustomerCreate,
    CustomerDetailOut,
    CustomerListOut,
    CustomerOut,
    CustomerSummaryOut,
    CustomerUpdate,
)
from crm.schemas.order import OrderOut

router = APIRouter(prefix="/customers", tags=["customers"])

DUPLICATE_EMAIL = "Customer with this email already exists"
ANALYTICS_CACHE_PREFIX = "customers:analytics"

_SORT_COLUMNS = {
    "createdAt": Customer.created_at,
    "name": Customer.name,
    "email": Customer.email,
    "totalSpending": Customer.total_spending,
    "visits": Customer.visits,
    "lastPurchaseDate": Customer.last_purchase_date,
    "registrationDate": Customer.registration_date,
}


async def _load_customer(session: AsyncSession, customer_id: int, *, for_update: bool = False) -> Customer:
    stmt = select(Customer).where(Customer.id == customer_id)
    if for_update:
        stmt = stmt.with_for_update(nowait=settings.DB_NOWAIT_LOCKS)
    customer = await session.scalar(stmt)
    if not customer:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")
    return customer


def _apply_nested(customer: Customer, address, preferences) -> None:
    if address is not None:
        for key, value in address.model_dump().items():
            setattr(customer, key, value)
    if preferences is not None:
        customer.email_marketing = preferences.email_marketing
        customer.sms_marketing = preferences.sms_marketing


def _summary(customer: Customer) -> CustomerSummaryOut:
    return CustomerSummaryOut(
        id=customer.id,
        name=customer.name,
        email=customer.email,
        total_spending=customer.total_spending or 0,
        visits=customer.visits or 0,
        registration_date=customer.registration_date,
    )


@router.get("", response_model=CustomerListOut)
async def list_customers(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: str = Query("", max_length=100),
    status_filter: Optional[Literal["active", "inactive", "blocked"]] = Query(None, alias="status"),
    sort_by: Literal[
        "createdAt", "name", "email", "totalSpending", "visits", "lastPurchaseDate", "registrationDate"
    ] = Query("createdAt", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> CustomerListOut:
    filters = []
    term = search.strip()
    if term:
        filters.append(
            or_(
                Customer.name.icontains(term, autoescape=True),
                Customer.email.icontains(term, autoescape=True),
                Customer.phone.icontains(term, autoescape=True),
            )
        )
    if status_filter:
        filters.append(Customer.status == status_filter)
    column = _SORT_COLUMNS[sort_by]
    order = column.asc() if sort_order == "asc" else column.desc()

    total = await session.scalar(select(func.count()).select_from(Customer).where(*filters))
    rows = (
        await session.execute(
            select(Customer)
            .where(*filters)
            .order_by(order, Customer.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
    ).scalars().all()

    await log_audit(
        session,
        str(user.id),
        "customer",
        None,
        "LIST",
        details={"page": page, "limit": limit, "search": term or None, "status": status_filter},
        remote_addr=client_addr(request),
        independent_txn=True,
    )
    return CustomerListOut(
        customers=[CustomerOut.model_validate(row) for row in rows],
        pagination=PaginationOut.build(page, limit, int(total or 0)),
    )


@router.get("/analytics/overview", response_model=CustomerAnalyticsOut)
async def customer_analytics(
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> CustomerAnalyticsOut:
    cache_key = generate_cache_key(ANALYTICS_CACHE_PREFIX)
    cached = await get_cache(cache_key)
    if cached is not None:
        return CustomerAnalyticsOut.model_validate(cached)

    counts = dict(
        (await session.execute(select(Customer.status, func.count()).group_by(Customer.status))).all()
    )
    top = (
        await session.execute(
            select(Customer).order_by(Customer.total_spending.desc(), Customer.id).limit(5)
        )
    ).scalars().all()
    recent = (
        await session.execute(
            select(Customer).order_by(Customer.created_at.desc(), Customer.id.desc()).limit(5)
        )
    ).scalars().all()

    result = CustomerAnalyticsOut(
        total_customers=sum(counts.values()),
        active_customers=counts.get("active", 0),
        inactive_customers=counts.get("inactive", 0),
        top_customers=[_summary(c) for c in top],
        recent_customers=[_summary(c) for c in recent],
    )
    await set_cache(cache_key, result.model_dump(mode="json", by_alias=True))
    return result


@router.get("/{customer_id}", response_model=CustomerDetailOut)
async def get_customer(
    customer_id: int,
    request: Request,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> CustomerDetailOut:
    customer = await _load_customer(session, customer_id)
    orders = (
        await session.execute(
            select(Order)
            .where(Order.customer_id == customer_id)
            .order_by(Order.order_date.desc(), Order.id.desc())
            .limit(10)
        )
    ).scalars().all()
    await log_audit(
        session,
        str(user.id),
        "customer",
        customer_id,
        "VIEW",
        remote_addr=client_addr(request),
        independent_txn=True,
    )
    return CustomerDetailOut(
        customer=CustomerOut.model_validate(customer),
        recent_orders=[OrderOut.model_validate(order) for order in orders],
    )


@router.post("", response_model=CustomerOut, status_code=status.HTTP_201_CREATED)
async def create_customer(
    payload: CustomerCreate,
    request: Request,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> CustomerOut:
    existing = await session.scalar(select(Customer.id).where(Customer.email == payload.email))
    if existing:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=DUPLICATE_EMAIL)

    customer = Customer(
        name=payload.name.strip(),
        email=payload.email,
        phone=payload.phone,
        total_spending=payload.total_spending,
        visits=payload.visits,
        last_purchase_date=payload.last_purchase_date,
        registration_date=payload.registration_date or utcnow(),
        status=payload.status,
        tags=payload.tags,
    )
    _apply_nested(customer, payload.address, payload.preferences)
    session.add(customer)
    try:
        await session.flush()
    except IntegrityError as exc:
        await session.rollback()
        raise_on_duplicate(exc, DUPLICATE_EMAIL)

    await log_audit(
        session,
        str(user.id),
        "customer",
        customer.id,
        "CREATE",
        details={"email": customer.email},
        remote_addr=client_addr(request),
    )
    await session.commit()
    await clear_cache_pattern(f"{ANALYTICS_CACHE_PREFIX}*")
    return CustomerOut.model_validate(customer)


@router.put("/{customer_id}", response_model=CustomerOut)
async def update_customer(
    customer_id: int,
    payload: CustomerUpdate,
    request: Request,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> CustomerOut:
    async def _update_once() -> CustomerOut:
        async with repeatable_read_transaction(session):
            customer = await _load_customer(session, customer_id, for_update=True)
            ensure_expected_timestamp(customer.updated_at, payload.expected_updated_at)

            changes = payload.model_dump(
                exclude_unset=True, exclude={"expected_updated_at", "address", "preferences"}
            )
            for key, value in changes.items():
                setattr(customer, key, value)
            _apply_nested(customer, payload.address, payload.preferences)
            await session.flush()

            await log_audit(
                session,
                str(user.id),
                "customer",
                customer_id,
                "UPDATE",
                details={"fields": sorted(payload.model_fields_set - {"expected_updated_at"})},
                remote_addr=client_addr(request),
            )
            return CustomerOut.model_validate(customer)

    try:
        result = await with_db_retry(session, _update_once)
    except IntegrityError as exc:
        raise_on_duplicate(exc, DUPLICATE_EMAIL)
    except OperationalError as exc:
        raise_on_lock_conflict(exc)
    await clear_cache_pattern(f"{ANALYTICS_CACHE_PREFIX}*")
    return result


@router.delete("/{customer_id}")
async def delete_customer(
    customer_id: int,
    request: Request,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> dict[str, str]:
    """Delete a customer together with their orders."""

    async def _delete_once() -> int:
        async with repeatable_read_transaction(session):
            await _load_customer(session, customer_id, for_update=True)
            order_ids = select(Order.id).where(Order.customer_id == customer_id)
            await session.execute(delete(OrderItem).where(OrderItem.order_id.in_(order_ids)))
            removed = await session.execute(delete(Order).where(Order.customer_id == customer_id))
            await session.execute(delete(Customer).where(Customer.id == customer_id))
            await log_audit(
                session,
                str(user.id),
                "customer",
                customer_id,
                "DELETE",
                details={"orders_removed": removed.rowcount},
                remote_addr=client_addr(request),
            )
            return removed.rowcount

    try:
        await with_db_retry(session, _delete_once)
    except OperationalError as exc:
        raise_on_lock_conflict(exc)
    await clear_cache_pattern("*:analytics*")
    return {"message": "Customer deleted successfully"}
