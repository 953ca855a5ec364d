"""
SMS provider clients.

``HelloSmsClient`` talks to the HelloSMS REST API; ``TestModeSmsClient``
accepts everything without sending, for development and staging.
"""
import logging
import random
import string
import time
import uuid
from dataclasses import dataclass
from typing import Optional

import httpx

from matkassen.core.config import Settings, settings as default_settings
from matkassen.core.exceptions import ConfigurationError

logger = logging.getLogger("matkassen.sms.provider")


@dataclass(frozen=True)
class ProviderSendResult:
    """Outcome of a single send call."""
    accepted: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    http_status: Optional[int] = None


class SmsProviderClient:
    """Interface for SMS providers used by the queue processor."""

    name = "base"

    async def send(self, phone_number: str, text: str) -> ProviderSendResult:
        """
        Hand one message to the provider.

        Args:
            phone_number: Recipient in E.164 format
            text: Message body

        Returns:
            ProviderSendResult: Acceptance or rejection. Implementations may
            also raise; the caller treats that as a rejection.
        """
        raise NotImplementedError


class TestModeSmsClient(SmsProviderClient):
    """Accepts every message and returns a fake provider ID."""

    name = "test"
    __test__ = False

    async def send(self, phone_number: str, text: str) -> ProviderSendResult:
        suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
        message_id = f"test_{int(time.time() * 1000)}_{suffix}"
        logger.info(f"Test mode: pretending to send SMS, id {message_id}")
        return ProviderSendResult(accepted=True, provider_message_id=message_id)


class HelloSmsClient(SmsProviderClient):
    """HelloSMS HTTP API client."""

    name = "hellosms"

    def __init__(
        self,
        *,
        api_url: str,
        username: str,
        password: str,
        sender_name: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            api_url: Send endpoint URL
            username: Basic auth user
            password: Basic auth password
            sender_name: Sender shown on the handset
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        """
        self.api_url = api_url
        self.username = username
        self.password = password
        self.sender_name = sender_name
        self.timeout = timeout
        self._transport = transport

    async def send(self, phone_number: str, text: str) -> ProviderSendResult:
        if not self.username or not self.password:
            logger.error("HelloSMS credentials not configured (required for live SMS)")
            return ProviderSendResult(accepted=False, error="HelloSMS credentials not configured")

        body = {
            "to": phone_number,
            "message": text,
            "from": self.sender_name,
            "sendApiCallback": False,
        }

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(
                    self.api_url,
                    auth=(self.username, self.password),
                    json=body,
                )
        except httpx.HTTPError as e:
            logger.warning(f"HelloSMS request failed: {e}")
            return ProviderSendResult(accepted=False, error=str(e) or type(e).__name__)

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.is_success and data.get("status") == "success":
            message_ids = data.get("messageIds") or []
            message_id = None
            if message_ids and isinstance(message_ids[0], dict):
                message_id = message_ids[0].get("apiMessageId")
            if not message_id:
                # Accepted without a usable ID: callbacks can never match it
                logger.warning("HelloSMS accepted message but returned no apiMessageId")
                message_id = f"unknown_{uuid.uuid4().hex}"
            return ProviderSendResult(accepted=True, provider_message_id=message_id, http_status=response.status_code)

        error = data.get("statusText") or f"HTTP {response.status_code}"
        logger.warning(f"HelloSMS rejected message: {error} (HTTP {response.status_code})")
        return ProviderSendResult(accepted=False, error=error, http_status=response.status_code)


def validate_sms_configuration(config: Settings = default_settings) -> None:
    """
    Fail fast on unusable SMS configuration.

    Production always needs HelloSMS credentials, even in test mode, so a
    misconfigured deploy is caught at startup rather than at first send.

    Raises:
        ConfigurationError: If production credentials are missing
    """
    if config.is_production and (not config.HELLO_SMS_USERNAME or not config.HELLO_SMS_PASSWORD):
        raise ConfigurationError(
            message="HELLO_SMS_USERNAME and HELLO_SMS_PASSWORD must be set in production",
            details={"test_mode": config.sms_test_mode},
        )

    if config.is_production and config.sms_test_mode:
        logger.warning("SMS TEST MODE ENABLED IN PRODUCTION: no SMS will actually be sent")
    elif config.sms_test_mode:
        logger.info(f"SMS test mode enabled (ENVIRONMENT={config.ENVIRONMENT})")
    else:
        logger.info("SMS configuration validated (live mode)")


def get_sms_provider_client(config: Settings = default_settings) -> SmsProviderClient:
    """Build the provider client for the current configuration."""
    if config.sms_test_mode:
        return TestModeSmsClient()
    return HelloSmsClient(
        api_url=config.HELLO_SMS_API_URL,
        username=config.HELLO_SMS_USERNAME,
        password=config.HELLO_SMS_PASSWORD,
        sender_name=config.SMS_SENDER_NAME,
        timeout=config.HELLO_SMS_TIMEOUT_SECONDS,
    )
