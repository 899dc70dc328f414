import pytest


@pytest.mark.anyio
async def test_register_then_login(client):
    resp = await client.post(
        "/api/auth/register",
        json={"name": "Nisha", "email": " Nisha@Example.com ", "password": "hunter22"},
    )
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["user"]["email"] == "nisha@example.com"
    assert body["tokenType"] == "bearer"

    login = await client.post(
        "/api/auth/login", json={"email": "NISHA@example.com", "password": "hunter22"}
    )
    assert login.status_code == 200
    token = login.json()["accessToken"]
    assert login.json()["user"]["lastLogin"] is not None

    me = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["email"] == "nisha@example.com"


@pytest.mark.anyio
async def test_register_duplicate_email(client, operator):
    resp = await client.post(
        "/api/auth/register",
        json={"name": "Other", "email": "ops@example.com", "password": "hunter22"},
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "User with this email already exists"


@pytest.mark.anyio
async def test_login_with_wrong_password(client, operator):
    resp = await client.post("/api/auth/login", json={"email": "ops@example.com", "password": "nope"})
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Invalid credentials"


@pytest.mark.anyio
async def test_me_rejects_garbage_token(client):
    resp = await client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
