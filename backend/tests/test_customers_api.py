import pytest


def _customer_body(**overrides):
    body = {
        "name": "Meera Joshi",
        "email": "Meera@Example.com",
        "phone": "+919800000000",
        "address": {"city": "Pune", "country": "India"},
        "preferences": {"emailMarketing": True, "smsMarketing": True},
    }
    body.update(overrides)
    return body


@pytest.mark.anyio
async def test_create_customer_normalises_email(client, auth_headers):
    resp = await client.post("/api/customers", json=_customer_body(), headers=auth_headers)
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["email"] == "meera@example.com"
    assert body["status"] == "active"
    assert body["address"]["city"] == "Pune"
    assert body["preferences"]["smsMarketing"] is True


@pytest.mark.anyio
async def test_duplicate_email_is_rejected(client, auth_headers):
    await client.post("/api/customers", json=_customer_body(), headers=auth_headers)
    resp = await client.post(
        "/api/customers", json=_customer_body(email="meera@example.com"), headers=auth_headers
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Customer with this email already exists"


@pytest.mark.anyio
async def test_invalid_email_is_rejected(client, auth_headers):
    resp = await client.post("/api/customers", json=_customer_body(email="not-an-email"), headers=auth_headers)
    assert resp.status_code == 422


@pytest.mark.anyio
async def test_update_with_stale_timestamp_conflicts(client, auth_headers):
    created = (await client.post("/api/customers", json=_customer_body(), headers=auth_headers)).json()
    url = f"/api/customers/{created['id']}"

    ok = await client.put(
        url, json={"visits": 3, "expectedUpdatedAt": created["updatedAt"]}, headers=auth_headers
    )
    assert ok.status_code == 200, ok.text
    assert ok.json()["visits"] == 3

    stale = await client.put(
        url, json={"visits": 4, "expectedUpdatedAt": "2020-01-01T00:00:00"}, headers=auth_headers
    )
    assert stale.status_code == 409


@pytest.mark.anyio
async def test_update_to_taken_email_is_rejected(client, auth_headers, make_customer):
    await make_customer(email="taken@example.com")
    created = (await client.post("/api/customers", json=_customer_body(), headers=auth_headers)).json()
    resp = await client.put(
        f"/api/customers/{created['id']}", json={"email": "taken@example.com"}, headers=auth_headers
    )
    assert resp.status_code == 400


@pytest.mark.parametrize("field", ["name", "email", "status", "visits", "totalSpending"])
@pytest.mark.anyio
async def test_update_rejects_null_for_required_fields(client, auth_headers, field):
    created = (await client.post("/api/customers", json=_customer_body(), headers=auth_headers)).json()
    url = f"/api/customers/{created['id']}"
    resp = await client.put(url, json={field: None}, headers=auth_headers)
    assert resp.status_code == 422

    unchanged = (await client.get(url, headers=auth_headers)).json()["customer"]
    assert unchanged["name"] == "Meera Joshi"
    assert unchanged["email"] == "meera@example.com"


@pytest.mark.anyio
async def test_update_can_clear_phone(client, auth_headers):
    created = (await client.post("/api/customers", json=_customer_body(), headers=auth_headers)).json()
    resp = await client.put(f"/api/customers/{created['id']}", json={"phone": None}, headers=auth_headers)
    assert resp.status_code == 200, resp.text
    assert resp.json()["phone"] is None


@pytest.mark.anyio
async def test_list_search_and_status(client, auth_headers, make_customer):
    await make_customer(name="Ravi Kumar", email="ravi@example.com")
    await make_customer(name="Sita Ram", email="sita@example.com", status="inactive")
    await make_customer(name="Ravindra Jain", email="rj@example.com", status="inactive")

    resp = await client.get(
        "/api/customers", params={"search": "ravi", "status": "inactive"}, headers=auth_headers
    )
    body = resp.json()
    assert [c["name"] for c in body["customers"]] == ["Ravindra Jain"]
    assert body["pagination"] == {
        "currentPage": 1,
        "totalPages": 1,
        "totalItems": 1,
        "hasNextPage": False,
        "hasPrevPage": False,
    }


@pytest.mark.anyio
async def test_get_unknown_customer(client, auth_headers):
    resp = await client.get("/api/customers/12345", headers=auth_headers)
    assert resp.status_code == 404


@pytest.mark.anyio
async def test_analytics_counts_by_status(client, auth_headers, make_customer):
    await make_customer(total_spending=10)
    big = await make_customer(total_spending=900)
    await make_customer(status="inactive")

    resp = await client.get("/api/customers/analytics/overview", headers=auth_headers)
    body = resp.json()
    assert body["totalCustomers"] == 3
    assert body["activeCustomers"] == 2
    assert body["inactiveCustomers"] == 1
    assert body["topCustomers"][0]["id"] == big
