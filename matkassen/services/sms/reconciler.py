"""
Provider delivery callback handling.

Callbacks can arrive late, twice, or for messages we never sent. Anything
that is not a malformed payload is acknowledged with 200 so the provider
stops retrying.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from matkassen.db.repositories.sms import SmsRepository
from matkassen.db.session import get_repository_context
from matkassen.schemas.sms import SmsStatus
from matkassen.services.event_bus.events import EventType
from matkassen.services.sms.status import CALLBACK_SOURCE_STATES, callback_target, can_transition
from matkassen.utils.datetime import utc_now

logger = logging.getLogger("matkassen.webhooks")


class ReconcileOutcome(str, Enum):
    """What a valid callback did to the store."""
    UPDATED = "updated"
    UNCHANGED = "unchanged"  # already in the reported state, or terminal
    UNMATCHED = "unmatched"  # no record with that provider id
    IGNORED = "ignored"  # record not in a state a callback may change


@dataclass(frozen=True)
class CallbackAcknowledgement:
    """HTTP response to send back to the provider."""
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)
    outcome: Optional[ReconcileOutcome] = None


ACK_BODY = {"received": True}
ACK_WITH_ERROR_BODY = {"received": True, "error": "Processing failed but acknowledged"}


class WebhookReconciler:
    """Applies provider status callbacks to SMS records."""

    def __init__(self, session_factory: async_sessionmaker, event_bus: Any = None):
        self.session_factory = session_factory
        self.event_bus = event_bus

    async def handle_status_callback(self, payload: Any) -> CallbackAcknowledgement:
        """
        Validate and apply one callback.

        Args:
            payload: Decoded JSON body ``{apiMessageId, status, timestamp, callbackRef}``

        Returns:
            CallbackAcknowledgement: 400 for malformed payloads, otherwise 200
        """
        if not isinstance(payload, dict):
            logger.warning("SMS status callback body is not an object")
            return CallbackAcknowledgement(400, {"error": "Missing apiMessageId"})

        api_message_id = payload.get("apiMessageId")
        if not isinstance(api_message_id, str) or not api_message_id.strip():
            logger.warning("SMS status callback without apiMessageId")
            return CallbackAcknowledgement(400, {"error": "Missing apiMessageId"})

        raw_status = payload.get("status")
        target = callback_target(raw_status) if isinstance(raw_status, str) else None
        if target is None:
            logger.warning(f"SMS status callback with invalid status {raw_status!r} for {api_message_id}")
            return CallbackAcknowledgement(400, {"error": "Invalid status"})

        try:
            outcome = await self.reconcile(api_message_id, raw_status, target)
        except Exception as e:
            logger.error(f"Failed to process SMS status callback for {api_message_id}: {e}", exc_info=True)
            return CallbackAcknowledgement(200, dict(ACK_WITH_ERROR_BODY))

        return CallbackAcknowledgement(200, dict(ACK_BODY), outcome)

    async def reconcile(self, provider_message_id: str, provider_status: str, target: SmsStatus) -> ReconcileOutcome:
        """
        Move the record for ``provider_message_id`` to ``target`` if allowed.

        The write is conditional on the status read here; if the processor
        changed the row in between, the callback is re-evaluated once
        against the new state.
        """
        async with get_repository_context(SmsRepository, self.session_factory) as repo:
            for _ in range(2):
                sms = await repo.get_by_provider_message_id(provider_message_id)
                if sms is None:
                    logger.debug(f"Callback for unknown provider id {provider_message_id}")
                    return ReconcileOutcome.UNMATCHED

                current = SmsStatus(sms.status)
                if current == target:
                    logger.debug(f"SMS {sms.id} already {target.value}, callback is a duplicate")
                    return ReconcileOutcome.UNCHANGED
                if current not in CALLBACK_SOURCE_STATES or not can_transition(current, target):
                    logger.debug(f"Ignoring {provider_status!r} callback for SMS {sms.id} in state {current.value}")
                    return (
                        ReconcileOutcome.UNCHANGED
                        if current in (SmsStatus.DELIVERED, SmsStatus.NOT_DELIVERED)
                        else ReconcileOutcome.IGNORED
                    )

                updated = await repo.apply_provider_status(
                    sms.id,
                    expected_status=current,
                    new_status=target,
                    provider_status=provider_status,
                    now=utc_now(),
                )
                if updated:
                    logger.info(f"SMS {sms.id} marked {target.value} by provider callback")
                    await self._publish(sms.id, target, provider_status)
                    return ReconcileOutcome.UPDATED

                logger.debug(f"SMS {sms.id} changed while applying callback, re-reading")

        return ReconcileOutcome.IGNORED

    async def _publish(self, sms_id: str, target: SmsStatus, provider_status: str) -> None:
        if self.event_bus is None:
            return
        event = EventType.SMS_DELIVERED if target == SmsStatus.DELIVERED else EventType.SMS_NOT_DELIVERED
        await self.event_bus.publish(event, {"sms_id": sms_id, "provider_status": provider_status})
