import pytest

from crm.core.security import create_access_token
from crm.services.lifecycle import complete_if_running

SPENDERS = [{"field": "totalSpending", "operator": ">", "value": 1000, "logic": "AND"}]


@pytest.fixture
async def customers(make_customer):
    ids = []
    for spending, visits in ((100, 1), (2000, 4), (3000, 8)):
        ids.append(await make_customer(total_spending=spending, visits=visits))
    await make_customer(total_spending=9000, visits=30, status="blocked")
    return ids


def _campaign_body(rules=SPENDERS, **overrides):
    body = {
        "name": "Winback",
        "type": "email",
        "message": {"subject": "We miss you", "content": "Hi {{name}}"},
        "audienceRules": rules,
    }
    body.update(overrides)
    return body


async def _create(client, auth_headers, **overrides):
    resp = await client.post("/api/campaigns", json=_campaign_body(**overrides), headers=auth_headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.anyio
async def test_requests_without_token_are_rejected(client):
    resp = await client.get("/api/campaigns")
    assert resp.status_code == 401


@pytest.mark.anyio
async def test_token_for_unknown_user_is_rejected(client):
    headers = {"Authorization": f"Bearer {create_access_token('999')}"}
    resp = await client.get("/api/campaigns", headers=headers)
    assert resp.status_code == 401


@pytest.mark.anyio
async def test_preview_audience(client, auth_headers, customers):
    resp = await client.post(
        "/api/campaigns/preview-audience", json={"audienceRules": SPENDERS}, headers=auth_headers
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["audienceSize"] == 2
    assert [c["id"] for c in body["sampleCustomers"]] == customers[1:]


@pytest.mark.anyio
async def test_preview_with_no_rules_covers_all_active(client, auth_headers, customers):
    resp = await client.post(
        "/api/campaigns/preview-audience", json={"audienceRules": []}, headers=auth_headers
    )
    assert resp.json()["audienceSize"] == 3


@pytest.mark.anyio
async def test_create_stores_audience_size_snapshot(client, auth_headers, customers, make_customer):
    campaign = await _create(client, auth_headers)
    assert campaign["status"] == "draft"
    assert campaign["audienceSize"] == 2
    assert campaign["stats"]["sent"] == 0

    await make_customer(total_spending=5000)
    resp = await client.get(f"/api/campaigns/{campaign['id']}", headers=auth_headers)
    assert resp.json()["audienceSize"] == 2


@pytest.mark.anyio
async def test_rule_update_recomputes_audience_size(client, auth_headers, customers):
    campaign = await _create(client, auth_headers)
    rules = [{"field": "visits", "operator": ">=", "value": 1, "logic": "AND"}]
    resp = await client.put(
        f"/api/campaigns/{campaign['id']}", json={"audienceRules": rules}, headers=auth_headers
    )
    assert resp.status_code == 200
    assert resp.json()["audienceSize"] == 3


@pytest.mark.anyio
async def test_stale_update_conflicts(client, auth_headers, customers):
    campaign = await _create(client, auth_headers)
    resp = await client.put(
        f"/api/campaigns/{campaign['id']}",
        json={"name": "Renamed", "expectedUpdatedAt": "2020-01-01T00:00:00"},
        headers=auth_headers,
    )
    assert resp.status_code == 409


@pytest.mark.anyio
async def test_start_stamps_simulated_stats(client, auth_headers, make_customer):
    for _ in range(100):
        await make_customer(total_spending=2000)
    campaign = await _create(client, auth_headers)

    resp = await client.post(f"/api/campaigns/{campaign['id']}/start", headers=auth_headers)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["status"] == "running"
    assert body["audienceSize"] == 100
    assert body["sentAt"] is not None
    assert body["stats"] == {
        "sent": 100,
        "delivered": 95,
        "opened": 23,
        "clicked": 1,
        "failed": 5,
        "unsubscribed": 0,
    }


@pytest.mark.anyio
async def test_running_campaign_guards(client, auth_headers, customers, scheduler):
    campaign = await _create(client, auth_headers)
    url = f"/api/campaigns/{campaign['id']}"
    assert (await client.post(f"{url}/start", headers=auth_headers)).status_code == 200
    assert campaign["id"] in scheduler.pending

    again = await client.post(f"{url}/start", headers=auth_headers)
    assert again.status_code == 400
    assert again.json()["detail"] == "Campaign cannot be started"

    edit = await client.put(url, json={"name": "Renamed"}, headers=auth_headers)
    assert edit.status_code == 400
    assert edit.json()["detail"] == "Cannot edit running or completed campaigns"

    delete = await client.delete(url, headers=auth_headers)
    assert delete.status_code == 400
    assert delete.json()["detail"] == "Cannot delete running campaigns"


@pytest.mark.anyio
async def test_completed_campaign_rejects_edit_but_can_be_deleted(
    client, auth_headers, customers, scheduler, session_factory
):
    campaign = await _create(client, auth_headers)
    url = f"/api/campaigns/{campaign['id']}"
    assert (await client.post(f"{url}/start", headers=auth_headers)).status_code == 200
    scheduler.cancel(campaign["id"])
    async with session_factory() as s:
        async with s.begin():
            assert await complete_if_running(s, campaign["id"]) is True

    completed = await client.get(url, headers=auth_headers)
    assert completed.json()["status"] == "completed"
    assert completed.json()["completedAt"] is not None

    edit = await client.put(url, json={"name": "Renamed"}, headers=auth_headers)
    assert edit.status_code == 400
    assert edit.json()["detail"] == "Cannot edit running or completed campaigns"

    restart = await client.post(f"{url}/start", headers=auth_headers)
    assert restart.status_code == 400

    delete = await client.delete(url, headers=auth_headers)
    assert delete.status_code == 200
    assert (await client.get(url, headers=auth_headers)).status_code == 404


@pytest.mark.parametrize("field", ["name", "type", "status", "message", "audienceRules"])
@pytest.mark.anyio
async def test_update_rejects_null_for_required_fields(client, auth_headers, customers, field):
    campaign = await _create(client, auth_headers)
    url = f"/api/campaigns/{campaign['id']}"
    resp = await client.put(url, json={field: None}, headers=auth_headers)
    assert resp.status_code == 422

    unchanged = (await client.get(url, headers=auth_headers)).json()
    assert unchanged["name"] == "Winback"
    assert unchanged["status"] == "draft"


@pytest.mark.anyio
async def test_update_accepts_null_for_optional_fields(client, auth_headers, customers):
    campaign = await _create(client, auth_headers, description="Q3 winback")
    resp = await client.put(
        f"/api/campaigns/{campaign['id']}", json={"description": None}, headers=auth_headers
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["description"] is None


@pytest.mark.anyio
async def test_pause_cancels_pending_completion(client, auth_headers, customers, scheduler):
    campaign = await _create(client, auth_headers)
    url = f"/api/campaigns/{campaign['id']}"
    await client.post(f"{url}/start", headers=auth_headers)

    resp = await client.post(f"{url}/pause", headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "paused"
    assert campaign["id"] not in scheduler.pending

    again = await client.post(f"{url}/pause", headers=auth_headers)
    assert again.status_code == 400
    assert again.json()["detail"] == "Only running campaigns can be paused"

    restart = await client.post(f"{url}/start", headers=auth_headers)
    assert restart.status_code == 400


@pytest.mark.anyio
async def test_pause_requires_running_campaign(client, auth_headers, customers):
    campaign = await _create(client, auth_headers)
    resp = await client.post(f"/api/campaigns/{campaign['id']}/pause", headers=auth_headers)
    assert resp.status_code == 400


@pytest.mark.anyio
async def test_delete_draft_campaign(client, auth_headers, customers):
    campaign = await _create(client, auth_headers)
    resp = await client.delete(f"/api/campaigns/{campaign['id']}", headers=auth_headers)
    assert resp.status_code == 200
    missing = await client.get(f"/api/campaigns/{campaign['id']}", headers=auth_headers)
    assert missing.status_code == 404


@pytest.mark.anyio
async def test_list_filters_by_status(client, auth_headers, customers):
    first = await _create(client, auth_headers)
    await _create(client, auth_headers, name="Second", status="scheduled")
    await client.post(f"/api/campaigns/{first['id']}/start", headers=auth_headers)

    resp = await client.get("/api/campaigns", params={"status": "running"}, headers=auth_headers)
    body = resp.json()
    assert [c["id"] for c in body["campaigns"]] == [first["id"]]
    assert body["pagination"]["totalItems"] == 1


@pytest.mark.anyio
async def test_segment_insights(client, auth_headers, customers):
    resp = await client.post("/api/segments/insights", json={"rules": SPENDERS}, headers=auth_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["segmentSize"] == 2
    assert body["totalCustomers"] == 3
    assert body["percentage"] == 66.67
    assert body["statistics"] == {
        "totalSpending": 5000.0,
        "averageSpending": 2500.0,
        "totalVisits": 12,
        "averageVisits": 6.0,
    }
    assert body["insights"] == [
        "This segment represents a large portion of your customer base",
        "Budget-conscious customers with lower spending",
        "Moderately engaged customers",
    ]
    assert len(body["sampleCustomers"]) == 2
