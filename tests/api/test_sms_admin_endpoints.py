from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from matkassen.core.config import settings
from matkassen.main import app
from matkassen.api.v1 import dependencies
from matkassen.services.event_bus.events import EventType
from matkassen.services.sms.monitor import SmsActivityMonitor

SMS_URL = "/api/v1/admin/sms"


def send_payload(**overrides):
    payload = {
        "phone_number": "+46701234567",
        "text": "Your food parcel is ready for pickup tomorrow at 14:00.",
        "intent": "pickup_reminder",
        "parcel_id": "parcel-1",
        "household_id": "household-1",
    }
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_requires_authentication(async_client):
    response = await async_client.get(f"{SMS_URL}/statistics")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_requires_admin_role(async_client, regular_user):
    app.dependency_overrides[dependencies.get_current_user] = lambda: regular_user

    response = await async_client.post(f"{SMS_URL}/process-queue")

    assert response.status_code == 403
    assert response.json()["code"] == "AUTHORIZATION_ERROR"


@pytest.mark.asyncio
async def test_enqueue_and_process(async_client, override_auth, mock_gateway):
    response = await async_client.post(SMS_URL, json=send_payload())
    assert response.status_code == 202
    created = response.json()
    assert created["status"] == "queued"
    assert created["to_e164"] == "+46701234567"

    response = await async_client.post(f"{SMS_URL}/process-queue")
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["lockAcquired"] is True
    assert body["processedCount"] == 1
    assert body["message"] == "Processed 1 messages"

    response = await async_client.get(f"{SMS_URL}/{created['id']}")
    assert response.status_code == 200
    assert response.json()["status"] == "sent"
    assert response.json()["provider_message_id"] == "mock_1"


@pytest.mark.asyncio
async def test_enqueue_twice_returns_same_record(async_client, override_auth):
    first = await async_client.post(SMS_URL, json=send_payload())
    second = await async_client.post(SMS_URL, json=send_payload())

    assert first.status_code == 202
    assert second.status_code == 202
    assert second.json()["id"] == first.json()["id"]


@pytest.mark.asyncio
async def test_enqueue_rejects_invalid_phone(async_client, override_auth):
    response = await async_client.post(SMS_URL, json=send_payload(phone_number="12"))

    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_process_queue_is_rate_limited(async_client, override_auth):
    for _ in range(3):
        response = await async_client.post(f"{SMS_URL}/process-queue")
        assert response.status_code == 200

    response = await async_client.post(f"{SMS_URL}/process-queue")

    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) >= 1
    assert response.headers["X-RateLimit-Limit"] == "3"
    assert response.headers["X-RateLimit-Remaining"] == "0"
    assert response.json()["message"].startswith("Rate limit exceeded")


@pytest.mark.asyncio
async def test_process_queue_failure_returns_500(async_client, override_auth):
    with patch(
        "matkassen.db.repositories.sms.SmsRepository.list_due",
        AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("database is locked"))),
    ):
        response = await async_client.post(f"{SMS_URL}/process-queue")

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert body["message"] == "Queue processing failed"


@pytest.mark.asyncio
async def test_get_unknown_message(async_client, override_auth):
    response = await async_client.get(f"{SMS_URL}/sms-missing")

    assert response.status_code == 404
    assert response.json()["status"] == "error"


@pytest.mark.asyncio
async def test_requeue_and_cancel(async_client, override_auth, make_sms):
    failed = await make_sms(status="failed", retry_count=3)
    queued = await make_sms(status="queued")

    response = await async_client.post(f"{SMS_URL}/{failed.id}/requeue")
    assert response.status_code == 200
    assert response.json()["status"] == "queued"

    response = await async_client.post(f"{SMS_URL}/{queued.id}/requeue")
    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_ACTION"

    response = await async_client.post(f"{SMS_URL}/{queued.id}/cancel")
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    response = await async_client.post(f"{SMS_URL}/{queued.id}/cancel")
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_failure_list_and_dismiss(async_client, override_auth, make_sms):
    failed = await make_sms(status="failed", last_error_message="Number 0701234567 rejected")

    response = await async_client.get(f"{SMS_URL}/failures")
    assert response.status_code == 200
    failures = response.json()
    assert [f["id"] for f in failures] == [failed.id]
    assert "0701234567" not in failures[0]["error_message"]

    response = await async_client.patch(f"{SMS_URL}/{failed.id}/dismiss", json={"dismissed": True})
    assert response.status_code == 200
    assert response.json()["dismissed_by_user_id"] == override_auth.id

    assert (await async_client.get(f"{SMS_URL}/failures")).json() == []
    dismissed = (await async_client.get(f"{SMS_URL}/failures", params={"status": "dismissed"})).json()
    assert [f["id"] for f in dismissed] == [failed.id]


@pytest.mark.asyncio
async def test_failure_list_rejects_unknown_filter(async_client, override_auth):
    response = await async_client.get(f"{SMS_URL}/failures", params={"status": "bogus"})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_statistics(async_client, override_auth, make_sms):
    await make_sms(status="queued")
    await make_sms(status="delivered")

    response = await async_client.get(f"{SMS_URL}/statistics")

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert body["by_status"]["queued"] == 1
    assert body["by_status"]["delivered"] == 1


@pytest.mark.asyncio
async def test_health(async_client, override_auth, make_sms):
    await make_sms(status="queued")

    response = await async_client.get(f"{SMS_URL}/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["details"]["pending_count"] == 1
    assert body["details"]["scheduler_running"] is False
    assert body["details"]["test_mode"] is True


@pytest.mark.asyncio
async def test_simulate_callback_disabled_by_default(async_client, override_auth, make_sms, monkeypatch):
    monkeypatch.setattr(settings, "SMS_ALLOW_SIMULATED_CALLBACKS", False)
    sms = await make_sms(status="sent", provider_message_id="prov-1")

    response = await async_client.post(
        f"{SMS_URL}/simulate-callback",
        json={"messageId": sms.id, "delivered": True},
    )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_simulate_callback(async_client, override_auth, make_sms, get_sms, monkeypatch):
    monkeypatch.setattr(settings, "SMS_ALLOW_SIMULATED_CALLBACKS", True)
    sent = await make_sms(status="sent", provider_message_id="prov-1")
    unsent = await make_sms(status="queued")

    response = await async_client.post(
        f"{SMS_URL}/simulate-callback",
        json={"messageId": sent.id, "delivered": False},
    )
    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert (await get_sms(sent.id)).status == "not_delivered"

    response = await async_client.post(
        f"{SMS_URL}/simulate-callback",
        json={"messageId": unsent.id, "delivered": True},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_requeue_budget_is_per_message(async_client, override_auth, make_sms):
    busy = await make_sms(status="queued")
    other = await make_sms(status="failed", retry_count=3)

    for _ in range(10):
        response = await async_client.post(f"{SMS_URL}/{busy.id}/requeue")
        assert response.status_code == 409

    response = await async_client.post(f"{SMS_URL}/{busy.id}/requeue")
    assert response.status_code == 429
    assert response.headers["X-RateLimit-Limit"] == "10"

    response = await async_client.post(f"{SMS_URL}/{other.id}/requeue")
    assert response.status_code == 200
    assert response.json()["status"] == "queued"


@pytest.mark.asyncio
async def test_parcel_history(async_client, override_auth, make_sms):
    reminder = await make_sms(status="sent", parcel_id="parcel-42", intent="pickup_reminder")
    await make_sms(status="queued", parcel_id="parcel-other")

    response = await async_client.get(f"{SMS_URL}/parcel/parcel-42")

    assert response.status_code == 200
    body = response.json()
    assert body["parcel_id"] == "parcel-42"
    assert [r["id"] for r in body["records"]] == [reminder.id]
    assert body["reminder_exists"] is True
    assert body["test_mode"] is True

    response = await async_client.get(f"{SMS_URL}/parcel/parcel-empty")
    assert response.status_code == 200
    assert response.json()["records"] == []
    assert response.json()["reminder_exists"] is False


@pytest.mark.asyncio
async def test_health_includes_activity(async_client, override_auth, event_bus):
    monitor = SmsActivityMonitor(event_bus)
    await monitor.start()
    app.state.sms_monitor = monitor
    await event_bus.publish(EventType.SMS_FAILED, {"sms_id": "sms-1"})

    response = await async_client.get(f"{SMS_URL}/health")

    assert response.status_code == 200
    activity = response.json()["details"]["activity"]
    assert activity["counters"]["failed"] == 1
    assert activity["queue_passes"] == 0
