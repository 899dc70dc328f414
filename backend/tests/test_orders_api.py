import pytest
from sqlalchemy import func, select

from crm.models import Customer, Order


def _order_body(customer_id, **overrides):
    body = {
        "customerId": customer_id,
        "items": [
            {"productName": "Headphones", "quantity": 2, "price": 1500},
            {"productName": "Cable", "quantity": 1, "price": 199.99},
        ],
        "totalAmount": 3199.99,
        "paymentMethod": "upi",
        "shippingAddress": {"city": "Chennai", "country": "India"},
    }
    body.update(overrides)
    return body


async def _customer(session_factory, customer_id):
    async with session_factory() as s:
        return await s.get(Customer, customer_id)


@pytest.mark.anyio
async def test_create_order_updates_customer_figures(client, auth_headers, make_customer, session_factory):
    customer_id = await make_customer(total_spending=100, visits=1)
    resp = await client.post(
        "/api/orders",
        json=_order_body(customer_id),
        headers={**auth_headers, "Idempotency-Key": "order-1"},
    )
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["orderNumber"].startswith("ORD-")
    assert body["status"] == "pending"
    assert body["customer"]["id"] == customer_id
    assert [item["total"] for item in body["items"]] == [3000.0, 199.99]
    assert body["shippingAddress"]["city"] == "Chennai"

    customer = await _customer(session_factory, customer_id)
    assert customer.total_spending == pytest.approx(3299.99)
    assert customer.visits == 2
    assert customer.last_purchase_date is not None


@pytest.mark.anyio
async def test_replayed_key_returns_first_order(client, auth_headers, make_customer, session_factory):
    customer_id = await make_customer()
    headers = {**auth_headers, "Idempotency-Key": "order-replay"}

    first = await client.post("/api/orders", json=_order_body(customer_id), headers=headers)
    second = await client.post("/api/orders", json=_order_body(customer_id), headers=headers)
    assert first.status_code == 201
    assert second.status_code == 201
    assert second.json()["id"] == first.json()["id"]

    async with session_factory() as s:
        assert await s.scalar(select(func.count()).select_from(Order)) == 1
    assert (await _customer(session_factory, customer_id)).visits == 1


@pytest.mark.anyio
async def test_order_requires_idempotency_key(client, auth_headers, make_customer):
    customer_id = await make_customer()
    resp = await client.post("/api/orders", json=_order_body(customer_id), headers=auth_headers)
    assert resp.status_code == 400


@pytest.mark.anyio
async def test_total_mismatch_is_rejected(client, auth_headers, make_customer, session_factory):
    customer_id = await make_customer()
    resp = await client.post(
        "/api/orders",
        json=_order_body(customer_id, totalAmount=3000),
        headers={**auth_headers, "Idempotency-Key": "order-mismatch"},
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Total amount does not match sum of items"
    assert (await _customer(session_factory, customer_id)).visits == 0


@pytest.mark.anyio
async def test_order_for_unknown_customer(client, auth_headers):
    resp = await client.post(
        "/api/orders",
        json=_order_body(4242),
        headers={**auth_headers, "Idempotency-Key": "order-404"},
    )
    assert resp.status_code == 404


@pytest.mark.anyio
async def test_status_update_stamps_delivery_date(client, auth_headers, make_customer):
    customer_id = await make_customer()
    order = (
        await client.post(
            "/api/orders",
            json=_order_body(customer_id),
            headers={**auth_headers, "Idempotency-Key": "order-status"},
        )
    ).json()
    assert order["deliveryDate"] is None

    resp = await client.patch(
        f"/api/orders/{order['id']}/status", json={"status": "delivered"}, headers=auth_headers
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "delivered"
    assert resp.json()["deliveryDate"] is not None

    analytics = (await client.get("/api/orders/analytics/overview", headers=auth_headers)).json()
    assert analytics["deliveredOrders"] == 1
    assert analytics["totalRevenue"] == 3199.99


@pytest.mark.anyio
async def test_delete_order_reverses_customer_figures(client, auth_headers, make_customer, session_factory):
    customer_id = await make_customer(total_spending=1000, visits=0)
    order = (
        await client.post(
            "/api/orders",
            json=_order_body(customer_id),
            headers={**auth_headers, "Idempotency-Key": "order-delete"},
        )
    ).json()

    resp = await client.delete(f"/api/orders/{order['id']}", headers=auth_headers)
    assert resp.status_code == 200
    customer = await _customer(session_factory, customer_id)
    assert customer.total_spending == pytest.approx(1000)
    assert customer.visits == 0
    assert (await client.get(f"/api/orders/{order['id']}", headers=auth_headers)).status_code == 404


@pytest.mark.anyio
async def test_deleting_customer_removes_their_orders(client, auth_headers, make_customer, session_factory):
    customer_id = await make_customer()
    await client.post(
        "/api/orders",
        json=_order_body(customer_id),
        headers={**auth_headers, "Idempotency-Key": "order-cascade"},
    )

    resp = await client.delete(f"/api/customers/{customer_id}", headers=auth_headers)
    assert resp.status_code == 200
    async with session_factory() as s:
        assert await s.scalar(select(func.count()).select_from(Order)) == 0
        assert await s.get(Customer, customer_id) is None
