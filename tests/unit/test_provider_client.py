import base64
import json

import httpx
import pytest

from matkassen.core.config import Settings
from matkassen.core.exceptions import ConfigurationError
from matkassen.services.sms.provider import (
    HelloSmsClient,
    TestModeSmsClient,
    get_sms_provider_client,
    validate_sms_configuration,
)

API_URL = "https://api.hellosms.test/api/v1/sms/send"


def make_client(handler, username="user", password="secret"):
    return HelloSmsClient(
        api_url=API_URL,
        username=username,
        password=password,
        sender_name="Matkassen",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_hellosms_success_returns_provider_id():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json={
            "status": "success",
            "statusText": "Message sent",
            "messageIds": [{"apiMessageId": "api-123", "to": "+46701234567", "status": 0, "message": "ok"}],
        })

    result = await make_client(handler).send("+46701234567", "Hello")

    assert result.accepted is True
    assert result.provider_message_id == "api-123"
    assert seen["body"] == {
        "to": "+46701234567",
        "message": "Hello",
        "from": "Matkassen",
        "sendApiCallback": False,
    }
    assert seen["auth"] == "Basic " + base64.b64encode(b"user:secret").decode()


@pytest.mark.asyncio
async def test_hellosms_accepted_without_id_gets_unique_fallback():
    def handler(request):
        return httpx.Response(200, json={"status": "success", "messageIds": []})

    client = make_client(handler)
    results = [await client.send("+46701234567", "Hello") for _ in range(20)]

    ids = [r.provider_message_id for r in results]
    assert all(r.accepted for r in results)
    assert all(i.startswith("unknown_") for i in ids)
    assert len(set(ids)) == len(ids)


@pytest.mark.asyncio
async def test_hellosms_rejection_uses_status_text():
    def handler(request):
        return httpx.Response(400, json={"status": "error", "statusText": "Invalid recipient"})

    result = await make_client(handler).send("+46701234567", "Hello")

    assert result.accepted is False
    assert result.error == "Invalid recipient"
    assert result.http_status == 400


@pytest.mark.asyncio
async def test_hellosms_error_without_json_body():
    def handler(request):
        return httpx.Response(503, text="Service Unavailable")

    result = await make_client(handler).send("+46701234567", "Hello")

    assert result.accepted is False
    assert result.error == "HTTP 503"
    assert result.http_status == 503


@pytest.mark.asyncio
async def test_hellosms_ok_status_without_success_flag_is_rejection():
    def handler(request):
        return httpx.Response(200, json={"status": "error"})

    result = await make_client(handler).send("+46701234567", "Hello")
    assert result.accepted is False
    assert result.error == "HTTP 200"


@pytest.mark.asyncio
async def test_hellosms_network_error_is_rejection():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = await make_client(handler).send("+46701234567", "Hello")
    assert result.accepted is False
    assert "connection refused" in result.error


@pytest.mark.asyncio
async def test_hellosms_missing_credentials_fails_without_request():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"status": "success"})

    result = await make_client(handler, username="", password="").send("+46701234567", "Hello")
    assert result.accepted is False
    assert result.error == "HelloSMS credentials not configured"
    assert calls == []


@pytest.mark.asyncio
async def test_test_mode_client_accepts_with_fake_id():
    result = await TestModeSmsClient().send("+46701234567", "Hello")
    assert result.accepted is True
    assert result.provider_message_id.startswith("test_")


def test_provider_selection_follows_test_mode():
    assert isinstance(get_sms_provider_client(Settings(HELLO_SMS_TEST_MODE=True)), TestModeSmsClient)
    live = get_sms_provider_client(Settings(HELLO_SMS_TEST_MODE=False, HELLO_SMS_USERNAME="u", HELLO_SMS_PASSWORD="p"))
    assert isinstance(live, HelloSmsClient)


def test_test_mode_defaults_from_environment():
    assert Settings(ENVIRONMENT="development", HELLO_SMS_TEST_MODE=None).sms_test_mode is True
    assert Settings(ENVIRONMENT="production", HELLO_SMS_TEST_MODE=None).sms_test_mode is False
    assert Settings(ENVIRONMENT="production", HELLO_SMS_TEST_MODE=True).sms_test_mode is True


def test_production_without_credentials_fails_fast():
    config = Settings(ENVIRONMENT="production", HELLO_SMS_USERNAME="", HELLO_SMS_PASSWORD="", HELLO_SMS_TEST_MODE=True)
    with pytest.raises(ConfigurationError):
        validate_sms_configuration(config)


def test_development_without_credentials_is_allowed():
    validate_sms_configuration(Settings(ENVIRONMENT="development", HELLO_SMS_USERNAME="", HELLO_SMS_PASSWORD=""))
