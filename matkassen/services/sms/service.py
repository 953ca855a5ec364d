"""
Operator-facing SMS operations: enqueue, inspect and repair records.
"""
import logging
from typing import Any, List, Optional, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from matkassen.core.config import Settings, settings as default_settings
from matkassen.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from matkassen.db.repositories.sms import FAILURE_STATES, SmsRepository
from matkassen.db.session import get_repository_context
from matkassen.models.sms import SmsMessage
from matkassen.schemas.sms import (
    ParcelSmsHistory,
    SmsCreate,
    SmsFailureResponse,
    SmsIntent,
    SmsResponse,
    SmsStatistics,
    SmsStatus,
)
from matkassen.services.event_bus.events import EventType
from matkassen.utils.datetime import ensure_utc, utc_now
from matkassen.utils.phone import PhoneValidationError, normalize_phone_to_e164, redact_phone_numbers

logger = logging.getLogger("matkassen.sms")

FAILURE_LIST_LIMIT = 100


def build_idempotency_key(
    *,
    intent: str,
    parcel_id: Optional[str],
    household_id: Optional[str],
    to_e164: str,
) -> str:
    """
    Derive a deduplication key for a send request.

    Requests for the same parcel, intent and household within the same UTC
    hour collapse into one message.
    """
    hour = utc_now().strftime("%Y-%m-%dT%H")
    return "|".join([parcel_id or "", intent, household_id or to_e164, hour])


class SmsService:
    """Enqueue and manage SMS records on behalf of staff users."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        event_bus: Any = None,
        config: Settings = default_settings,
    ):
        self.session_factory = session_factory
        self.event_bus = event_bus
        self.config = config

    async def enqueue(self, request: SmsCreate) -> Tuple[SmsMessage, bool]:
        """
        Queue a message for sending.

        Args:
            request: Send request

        Returns:
            Tuple[SmsMessage, bool]: The record and whether it was newly created

        Raises:
            ValidationError: If the phone number cannot be normalized
        """
        try:
            to_e164 = normalize_phone_to_e164(request.phone_number, self.config.SMS_DEFAULT_REGION)
        except PhoneValidationError as e:
            logger.warning(f"Rejected SMS enqueue: {e.message}")
            raise ValidationError(message=f"Invalid phone number: {e.message}", details={"field": "phone_number"})

        intent = request.intent.value
        key = request.idempotency_key or build_idempotency_key(
            intent=intent,
            parcel_id=request.parcel_id,
            household_id=request.household_id,
            to_e164=to_e164,
        )

        async with get_repository_context(SmsRepository, self.session_factory) as repo:
            sms, created = await repo.create_sms(
                intent=intent,
                to_e164=to_e164,
                text=request.text,
                idempotency_key=key,
                parcel_id=request.parcel_id,
                household_id=request.household_id,
            )

        if created:
            logger.info(f"Queued SMS {sms.id} ({intent})")
            await self._publish(EventType.SMS_QUEUED, {"sms_id": sms.id, "intent": intent})
        else:
            logger.info(f"SMS enqueue deduplicated to existing {sms.id}")
        return sms, created

    async def get(self, sms_id: str) -> SmsMessage:
        """Get a record or raise ``NotFoundError``."""
        async with get_repository_context(SmsRepository, self.session_factory) as repo:
            sms = await repo.get_by_id(sms_id)
        if sms is None:
            raise NotFoundError(message=f"SMS {sms_id} not found")
        return sms

    async def requeue(self, sms_id: str) -> SmsMessage:
        """
        Put a permanently failed message back in the queue.

        The retry counter is kept, so the next failure fails it again
        immediately.
        """
        sms = await self.get(sms_id)
        async with get_repository_context(SmsRepository, self.session_factory) as repo:
            updated = await repo.requeue(sms_id, now=utc_now())
            if not updated:
                raise InvalidStateError(
                    message="Only failed messages can be re-queued",
                    details={"status": sms.status},
                )
            sms = await repo.get_by_id(sms_id)

        logger.info(f"SMS {sms_id} re-queued by operator")
        await self._publish(EventType.SMS_REQUEUED, {"sms_id": sms_id})
        return sms

    async def cancel(self, sms_id: str) -> SmsMessage:
        """Cancel a message that has not been handed to the provider."""
        sms = await self.get(sms_id)
        async with get_repository_context(SmsRepository, self.session_factory) as repo:
            updated = await repo.cancel(sms_id, now=utc_now())
            if not updated:
                raise InvalidStateError(
                    message="Only queued or retrying messages can be cancelled",
                    details={"status": sms.status},
                )
            sms = await repo.get_by_id(sms_id)

        logger.info(f"SMS {sms_id} cancelled by operator")
        await self._publish(EventType.SMS_CANCELLED, {"sms_id": sms_id})
        return sms

    async def set_dismissed(self, sms_id: str, *, dismissed: bool, user_id: str) -> SmsMessage:
        """Hide a failure from the active failure list, or bring it back."""
        sms = await self.get(sms_id)
        if SmsStatus(sms.status) not in FAILURE_STATES:
            raise InvalidStateError(
                message="Only failed messages can be dismissed",
                details={"status": sms.status},
            )

        async with get_repository_context(SmsRepository, self.session_factory) as repo:
            updated = await repo.set_dismissed(sms_id, dismissed=dismissed, user_id=user_id, now=utc_now())
            if not updated:
                # Re-queued or otherwise changed since it was read
                raise InvalidStateError(
                    message="Only failed messages can be dismissed",
                    details={"status": sms.status},
                )
            sms = await repo.get_by_id(sms_id)

        logger.info(f"SMS {sms_id} {'dismissed' if dismissed else 'restored'} by {user_id}")
        return sms

    async def list_failures(self, *, dismissed: bool = False) -> List[SmsFailureResponse]:
        """
        List failed and undelivered messages for staff review.

        Phone numbers are scrubbed from error texts before they leave the
        service.
        """
        async with get_repository_context(SmsRepository, self.session_factory) as repo:
            rows = await repo.list_failures(dismissed=dismissed, limit=FAILURE_LIST_LIMIT)

        return [
            SmsFailureResponse(
                id=row.id,
                intent=row.intent,
                parcel_id=row.parcel_id,
                household_id=row.household_id,
                status=row.status,
                retry_count=row.retry_count,
                error_message=redact_phone_numbers(row.last_error_message),
                provider_status=row.provider_status,
                failed_at=ensure_utc(row.failed_at) if row.failed_at else None,
                dismissed_at=ensure_utc(row.dismissed_at) if row.dismissed_at else None,
                created_at=ensure_utc(row.created_at),
            )
            for row in rows
        ]

    async def parcel_history(self, parcel_id: str) -> ParcelSmsHistory:
        """
        Get the messages sent for a parcel.

        Args:
            parcel_id: Parcel ID

        Returns:
            ParcelSmsHistory: Records newest first, plus whether a pickup
            reminder already exists for the parcel
        """
        async with get_repository_context(SmsRepository, self.session_factory) as repo:
            rows = await repo.list_for_parcel(parcel_id)

        return ParcelSmsHistory(
            parcel_id=parcel_id,
            records=[SmsResponse.model_validate(row) for row in rows],
            reminder_exists=any(row.intent == SmsIntent.PICKUP_REMINDER.value for row in rows),
            test_mode=self.config.sms_test_mode,
        )

    async def statistics(self) -> SmsStatistics:
        """Count records per status."""
        async with get_repository_context(SmsRepository, self.session_factory) as repo:
            counts = await repo.count_by_status()
        return SmsStatistics(total=sum(counts.values()), by_status=counts)

    async def pending_count(self) -> int:
        async with get_repository_context(SmsRepository, self.session_factory) as repo:
            return await repo.count_pending()

    async def _publish(self, event_type: EventType, data: dict) -> None:
        if self.event_bus is not None:
            await self.event_bus.publish(event_type, data)
