"""Order endpoints. Orders feed the customer spending and visit figures."""

import time
from collections import OrderedDict
from datetime import timedelta
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.audit import client_addr, log_audit
from crm.core.cache import clear_cache_pattern, generate_cache_key, get_cache, set_cache
from crm.core.config import settings
from crm.core.db import get_session, repeatable_read_transaction
from crm.core.db_errors import raise_on_lock_conflict
from crm.core.db_retry import with_db_retry
from crm.core.deps import get_current_user
from crm.core.idempotency import (
    bump_idempotency_heartbeat,
    claim_idempotency_key,
    complete_idempotency_key,
    require_idempotency_key,
)
from crm.models.base import utcnow
from crm.models.customer import Customer
from crm.models.order import Order, OrderItem
from crm.models.user import User
from crm.schemas.common import PaginationOut
from crm.schemas.order import (
    MonthlyRevenueOut,
    OrderAnalyticsOut,
    OrderCreate,
    OrderCustomerOut,
    OrderListOut,
    OrderOut,
    OrderStatusUpdate,
)

router = APIRouter(prefix="/orders", tags=["orders"])

ANALYTICS_CACHE_PREFIX = "orders:analytics"
REVENUE_STATUSES = ("delivered", "shipped")
TOTAL_TOLERANCE = 0.01

_SORT_COLUMNS = {
    "orderDate": Order.order_date,
    "totalAmount": Order.total_amount,
    "status": Order.status,
    "createdAt": Order.created_at,
}


async def _load_order(session: AsyncSession, order_id: int, *, for_update: bool = False) -> Order:
    stmt = select(Order).where(Order.id == order_id)
    if for_update:
        stmt = stmt.with_for_update(nowait=settings.DB_NOWAIT_LOCKS)
    order = await session.scalar(stmt)
    if not order:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return order


async def _with_customers(session: AsyncSession, orders) -> list[OrderOut]:
    """Serialise orders with the owning customer's name and email attached."""

    ids = {order.customer_id for order in orders}
    customers = {}
    if ids:
        rows = await session.execute(
            select(Customer.id, Customer.name, Customer.email).where(Customer.id.in_(ids))
        )
        customers = {row.id: OrderCustomerOut(id=row.id, name=row.name, email=row.email) for row in rows}
    return [
        OrderOut.model_validate(order).model_copy(update={"customer": customers.get(order.customer_id)})
        for order in orders
    ]


async def _next_order_number(session: AsyncSession) -> str:
    count = await session.scalar(select(func.count()).select_from(Order))
    epoch_ms = int(time.time() * 1000)
    return f"ORD-{epoch_ms}-{int(count or 0) + 1:04d}"


def _build_items(payload: OrderCreate) -> list[OrderItem]:
    return [
        OrderItem(
            line_no=line_no,
            product_name=item.product_name.strip(),
            quantity=item.quantity,
            price=item.price,
            total=round(item.quantity * item.price, 2),
        )
        for line_no, item in enumerate(payload.items, start=1)
    ]


@router.get("", response_model=OrderListOut)
async def list_orders(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status_filter: Optional[
        Literal["pending", "confirmed", "shipped", "delivered", "cancelled", "refunded"]
    ] = Query(None, alias="status"),
    customer_id: Optional[int] = Query(None, alias="customerId"),
    sort_by: Literal["orderDate", "totalAmount", "status", "createdAt"] = Query("orderDate", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> OrderListOut:
    filters = []
    if status_filter:
        filters.append(Order.status == status_filter)
    if customer_id is not None:
        filters.append(Order.customer_id == customer_id)
    column = _SORT_COLUMNS[sort_by]
    order_by = column.asc() if sort_order == "asc" else column.desc()

    total = await session.scalar(select(func.count()).select_from(Order).where(*filters))
    rows = (
        await session.execute(
            select(Order)
            .where(*filters)
            .order_by(order_by, Order.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
    ).scalars().all()

    await log_audit(
        session,
        str(user.id),
        "order",
        None,
        "LIST",
        details={"page": page, "limit": limit, "status": status_filter, "customer_id": customer_id},
        remote_addr=client_addr(request),
        independent_txn=True,
    )
    return OrderListOut(
        orders=await _with_customers(session, rows),
        pagination=PaginationOut.build(page, limit, int(total or 0)),
    )


@router.get("/analytics/overview", response_model=OrderAnalyticsOut)
async def order_analytics(
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> OrderAnalyticsOut:
    cache_key = generate_cache_key(ANALYTICS_CACHE_PREFIX)
    cached = await get_cache(cache_key)
    if cached is not None:
        return OrderAnalyticsOut.model_validate(cached)

    counts = dict((await session.execute(select(Order.status, func.count()).group_by(Order.status))).all())
    revenue = await session.scalar(
        select(func.coalesce(func.sum(Order.total_amount), 0)).where(Order.status.in_(REVENUE_STATUSES))
    )
    recent = (
        await session.execute(select(Order).order_by(Order.order_date.desc(), Order.id.desc()).limit(5))
    ).scalars().all()

    # Month buckets are built in Python so the query stays portable across backends.
    since = utcnow() - timedelta(days=183)
    monthly: "OrderedDict[tuple[int, int], list[float]]" = OrderedDict()
    rows = await session.execute(
        select(Order.order_date, Order.total_amount)
        .where(Order.order_date >= since, Order.status.in_(REVENUE_STATUSES))
        .order_by(Order.order_date)
    )
    for order_date, amount in rows:
        bucket = monthly.setdefault((order_date.year, order_date.month), [0.0, 0])
        bucket[0] += float(amount or 0)
        bucket[1] += 1

    result = OrderAnalyticsOut(
        total_orders=sum(counts.values()),
        pending_orders=counts.get("pending", 0),
        delivered_orders=counts.get("delivered", 0),
        total_revenue=round(float(revenue or 0), 2),
        recent_orders=await _with_customers(session, recent),
        monthly_revenue=[
            MonthlyRevenueOut(year=year, month=month, revenue=round(total, 2), count=count)
            for (year, month), (total, count) in monthly.items()
        ],
    )
    await set_cache(cache_key, result.model_dump(mode="json", by_alias=True))
    return result


@router.get("/{order_id}", response_model=OrderOut)
async def get_order(
    order_id: int,
    request: Request,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> OrderOut:
    order = await _load_order(session, order_id)
    await log_audit(
        session,
        str(user.id),
        "order",
        order_id,
        "VIEW",
        remote_addr=client_addr(request),
        independent_txn=True,
    )
    return (await _with_customers(session, [order]))[0]


@router.post("", response_model=OrderOut, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreate,
    request: Request,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> OrderOut:
    """Record an order and roll it into the customer's spending figures.

    Requires an ``Idempotency-Key`` header; a replayed key returns the order
    created by the first request.
    """

    idempotency_key = require_idempotency_key(request)
    items = _build_items(payload)
    calculated = sum(item.total for item in items)
    if abs(calculated - payload.total_amount) > TOTAL_TOLERANCE:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Total amount does not match sum of items",
        )

    async def _create_once() -> Order:
        async with repeatable_read_transaction(session):
            claim = await claim_idempotency_key(
                session,
                idempotency_key=idempotency_key,
                resource="order",
            )
            if claim.replay_id is not None:
                existing = await session.scalar(select(Order).where(Order.id == claim.replay_id))
                if existing:
                    return existing
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail="Original request completed but the order was not found.",
                )
            claim.raise_if_in_progress()

            await bump_idempotency_heartbeat(session, idempotency_key=idempotency_key)

            customer = await session.scalar(
                select(Customer)
                .where(Customer.id == payload.customer_id)
                .with_for_update(nowait=settings.DB_NOWAIT_LOCKS)
            )
            if not customer:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")

            shipping = payload.shipping_address
            order = Order(
                order_number=await _next_order_number(session),
                customer_id=customer.id,
                total_amount=payload.total_amount,
                payment_method=payload.payment_method,
                payment_status=payload.payment_status,
                shipping_street=shipping.street if shipping else None,
                shipping_city=shipping.city if shipping else None,
                shipping_state=shipping.state if shipping else None,
                shipping_zip_code=shipping.zip_code if shipping else None,
                shipping_country=shipping.country if shipping else None,
                items=_build_items(payload),
            )
            session.add(order)

            customer.total_spending = round((customer.total_spending or 0) + payload.total_amount, 2)
            customer.visits = (customer.visits or 0) + 1
            customer.last_purchase_date = utcnow()
            await session.flush()

            await log_audit(
                session,
                str(user.id),
                "order",
                order.id,
                "CREATE",
                details={"customer_id": customer.id, "total_amount": payload.total_amount},
                remote_addr=client_addr(request),
            )
            await complete_idempotency_key(
                session, idempotency_key=idempotency_key, resource_id=str(order.id)
            )
            return order

    try:
        order = await with_db_retry(session, _create_once)
    except IntegrityError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Order number collision, please retry.",
        )
    except OperationalError as exc:
        raise_on_lock_conflict(exc)
    await clear_cache_pattern("*:analytics*")
    return (await _with_customers(session, [order]))[0]


@router.patch("/{order_id}/status", response_model=OrderOut)
async def update_order_status(
    order_id: int,
    payload: OrderStatusUpdate,
    request: Request,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> OrderOut:
    async def _update_once() -> Order:
        async with repeatable_read_transaction(session):
            order = await _load_order(session, order_id, for_update=True)
            previous = order.status
            order.status = payload.status
            if payload.status == "delivered":
                order.delivery_date = utcnow()
            await session.flush()
            await log_audit(
                session,
                str(user.id),
                "order",
                order_id,
                "STATUS",
                details={"from": previous, "to": payload.status},
                remote_addr=client_addr(request),
            )
            return order

    try:
        order = await with_db_retry(session, _update_once)
    except OperationalError as exc:
        raise_on_lock_conflict(exc)
    await clear_cache_pattern(f"{ANALYTICS_CACHE_PREFIX}*")
    return (await _with_customers(session, [order]))[0]


@router.delete("/{order_id}")
async def delete_order(
    order_id: int,
    request: Request,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> dict[str, str]:
    """Delete an order and take it back out of the customer's figures."""

    async def _delete_once() -> None:
        async with repeatable_read_transaction(session):
            order = await _load_order(session, order_id, for_update=True)
            customer = await session.scalar(
                select(Customer)
                .where(Customer.id == order.customer_id)
                .with_for_update(nowait=settings.DB_NOWAIT_LOCKS)
            )
            if customer:
                customer.total_spending = max(0.0, round((customer.total_spending or 0) - order.total_amount, 2))
                customer.visits = max(0, (customer.visits or 0) - 1)
            await session.delete(order)
            await log_audit(
                session,
                str(user.id),
                "order",
                order_id,
                "DELETE",
                details={"customer_id": order.customer_id, "total_amount": order.total_amount},
                remote_addr=client_addr(request),
            )

    try:
        await with_db_retry(session, _delete_once)
    except OperationalError as exc:
        raise_on_lock_conflict(exc)
    await clear_cache_pattern("*:analytics*")
    return {"message": "Order deleted successfully"}
