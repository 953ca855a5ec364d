import pytest

from matkassen.scripts.create_admin import create_admin_user
from conftest import ADMIN_USER

AUTH_URL = "/api/v1/auth"


@pytest.mark.asyncio
async def test_login_and_read_profile(async_client, admin_user):
    response = await async_client.post(
        f"{AUTH_URL}/token",
        data={"username": ADMIN_USER["email"], "password": ADMIN_USER["password"]},
    )
    assert response.status_code == 200
    token = response.json()
    assert token["token_type"] == "bearer"

    response = await async_client.get(
        f"{AUTH_URL}/me",
        headers={"Authorization": f"Bearer {token['access_token']}"},
    )
    assert response.status_code == 200
    assert response.json()["email"] == ADMIN_USER["email"]
    assert response.json()["role"] == "admin"


@pytest.mark.asyncio
async def test_login_with_wrong_password(async_client, admin_user):
    response = await async_client.post(
        f"{AUTH_URL}/token",
        data={"username": ADMIN_USER["email"], "password": "wrong-password1"},
    )

    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_invalid_token_is_rejected(async_client):
    response = await async_client.get(f"{AUTH_URL}/me", headers={"Authorization": "Bearer not-a-token"})

    assert response.status_code == 401
    assert response.json()["message"] == "Invalid token"


@pytest.mark.asyncio
async def test_admin_token_can_use_sms_admin_api(async_client, session_factory):
    await create_admin_user("ops@example.com", "Opspass123", session_factory=session_factory)
    token = (await async_client.post(
        f"{AUTH_URL}/token",
        data={"username": "ops@example.com", "password": "Opspass123"},
    )).json()["access_token"]

    response = await async_client.get(
        "/api/v1/admin/sms/statistics",
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 200


@pytest.mark.asyncio
async def test_create_admin_is_idempotent(session_factory):
    first, created_first = await create_admin_user("ops@example.com", "Opspass123", session_factory=session_factory)
    second, created_second = await create_admin_user("ops@example.com", "Opspass123", session_factory=session_factory)

    assert created_first is True
    assert created_second is False
    assert second.id == first.id
    assert second.role == "admin"
