"""
SMS repository for database operations related to outbound messages.

Every state change is a conditional UPDATE keyed by id and the status the
caller last observed. A False return means another writer got there first
and the caller should treat its own change as stale.
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from matkassen.db.repositories.base import BaseRepository
from matkassen.models.sms import SmsMessage
from matkassen.schemas.sms import SmsStatus
from matkassen.services.sms.status import FailureOutcome, PENDING_STATES
from matkassen.utils.datetime import utc_now
from matkassen.utils.ids import generate_prefixed_id, IDPrefix

logger = logging.getLogger("matkassen.db")

FAILURE_STATES = (SmsStatus.FAILED, SmsStatus.NOT_DELIVERED)


def _values(states: Iterable[SmsStatus]) -> List[str]:
    return [SmsStatus(s).value for s in states]


class SmsRepository(BaseRepository[SmsMessage]):
    """SMS repository for database operations."""

    def __init__(self, session: AsyncSession):
        """Initialize with session and SmsMessage model."""
        super().__init__(session=session, model=SmsMessage)

    async def _conditional_update(self, *conditions, **values) -> bool:
        result = await self.session.execute(
            update(SmsMessage)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount == 1

    async def create_sms(
        self,
        *,
        intent: str,
        to_e164: str,
        text: str,
        idempotency_key: str,
        parcel_id: Optional[str] = None,
        household_id: Optional[str] = None,
    ) -> Tuple[SmsMessage, bool]:
        """
        Create a queued SMS unless one with the same idempotency key exists.

        Args:
            intent: Why the message is sent
            to_e164: Normalized recipient number
            text: Message body
            idempotency_key: Deduplication key
            parcel_id: Related parcel
            household_id: Related household

        Returns:
            Tuple[SmsMessage, bool]: The record and whether it was newly created
        """
        existing = await self.get_by_attribute("idempotency_key", idempotency_key)
        if existing:
            return existing, False

        sms = SmsMessage(
            id=generate_prefixed_id(IDPrefix.SMS),
            intent=intent,
            parcel_id=parcel_id,
            household_id=household_id,
            to_e164=to_e164,
            text=text,
            status=SmsStatus.QUEUED.value,
            retry_count=0,
            idempotency_key=idempotency_key,
        )
        self.session.add(sms)
        try:
            await self.session.commit()
        except IntegrityError:
            # Concurrent enqueue with the same key won the insert
            await self.session.rollback()
            existing = await self.get_by_attribute("idempotency_key", idempotency_key)
            if existing is None:
                raise
            logger.info(f"Duplicate SMS enqueue for key {idempotency_key}, returning {existing.id}")
            return existing, False

        await self.session.refresh(sms)
        return sms, True

    async def get_by_provider_message_id(self, provider_message_id: str) -> Optional[SmsMessage]:
        """Look up the record a provider callback refers to."""
        return await self.get_by_attribute("provider_message_id", provider_message_id)

    async def list_in_states(
        self,
        states: Iterable[SmsStatus],
        *,
        newest_first: bool = False,
        limit: Optional[int] = None,
    ) -> List[SmsMessage]:
        """
        Get all records in any of ``states`` ordered by creation time.

        Args:
            states: Statuses to include
            newest_first: Sort descending instead of ascending
            limit: Maximum number of records

        Returns:
            List[SmsMessage]: Matching records
        """
        order = SmsMessage.created_at.desc() if newest_first else SmsMessage.created_at.asc()
        query = select(SmsMessage).where(SmsMessage.status.in_(_values(states))).order_by(order)
        if limit is not None:
            query = query.limit(limit)
        result = await self.session.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def list_due(self, *, now: datetime, limit: int) -> List[SmsMessage]:
        """
        Get queued and retrying records whose next attempt is due.

        Oldest attempt first so a message that keeps failing does not
        starve newer ones.
        """
        query = (
            select(SmsMessage)
            .where(
                SmsMessage.status.in_(_values(PENDING_STATES)),
                or_(SmsMessage.next_attempt_at.is_(None), SmsMessage.next_attempt_at <= now),
            )
            .order_by(
                func.coalesce(SmsMessage.last_attempt_at, SmsMessage.created_at).asc(),
                SmsMessage.created_at.asc(),
            )
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count_pending(self) -> int:
        """Count records still waiting to be sent."""
        result = await self.session.execute(
            select(func.count()).select_from(SmsMessage).where(SmsMessage.status.in_(_values(PENDING_STATES)))
        )
        return result.scalar_one()

    async def find_stale_sending(self, *, cutoff: datetime) -> List[SmsMessage]:
        """Get records stuck in ``sending`` since before ``cutoff``."""
        query = (
            select(SmsMessage)
            .where(
                SmsMessage.status == SmsStatus.SENDING.value,
                or_(SmsMessage.last_attempt_at.is_(None), SmsMessage.last_attempt_at < cutoff),
            )
            .order_by(SmsMessage.last_attempt_at.asc())
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def transition_status(
        self,
        sms_id: str,
        *,
        expected_status: SmsStatus,
        new_status: SmsStatus,
        **values,
    ) -> bool:
        """
        Move a record from ``expected_status`` to ``new_status``.

        Args:
            sms_id: SMS ID
            expected_status: Status the caller last observed
            new_status: Target status
            **values: Extra columns to set in the same statement

        Returns:
            bool: True if the row was still in ``expected_status`` and was updated
        """
        values.setdefault("updated_at", utc_now())
        return await self._conditional_update(
            SmsMessage.id == sms_id,
            SmsMessage.status == SmsStatus(expected_status).value,
            status=SmsStatus(new_status).value,
            **values,
        )

    async def mark_sending(self, sms_id: str, *, expected_status: SmsStatus, now: datetime) -> bool:
        """Claim a due record for a send attempt."""
        return await self.transition_status(
            sms_id,
            expected_status=expected_status,
            new_status=SmsStatus.SENDING,
            last_attempt_at=now,
            updated_at=now,
        )

    async def mark_sent(self, sms_id: str, *, provider_message_id: str, now: datetime) -> bool:
        """Record provider acceptance of a send attempt."""
        return await self.transition_status(
            sms_id,
            expected_status=SmsStatus.SENDING,
            new_status=SmsStatus.SENT,
            provider_message_id=provider_message_id,
            sent_at=now,
            next_attempt_at=None,
            last_error_message=None,
            updated_at=now,
        )

    async def mark_send_failure(
        self,
        sms_id: str,
        *,
        observed_retry_count: int,
        outcome: FailureOutcome,
        error_message: Optional[str],
        now: datetime,
    ) -> bool:
        """
        Apply a failed send attempt to a record in ``sending``.

        The retry counter is incremented in SQL and guarded by the count the
        caller observed, so an attempt is never counted twice.
        """
        return await self._conditional_update(
            SmsMessage.id == sms_id,
            SmsMessage.status == SmsStatus.SENDING.value,
            SmsMessage.retry_count == observed_retry_count,
            status=outcome.status.value,
            retry_count=SmsMessage.retry_count + 1,
            next_attempt_at=outcome.next_attempt_at,
            failed_at=outcome.failed_at,
            delivered_at=None,
            last_error_message=error_message,
            updated_at=now,
        )

    async def apply_provider_status(
        self,
        sms_id: str,
        *,
        expected_status: SmsStatus,
        new_status: SmsStatus,
        provider_status: str,
        now: datetime,
    ) -> bool:
        """
        Apply a delivery report. ``delivered_at`` and ``failed_at`` are
        mutually exclusive, so setting one clears the other.
        """
        delivered = SmsStatus(new_status) == SmsStatus.DELIVERED
        return await self.transition_status(
            sms_id,
            expected_status=expected_status,
            new_status=new_status,
            provider_status=provider_status,
            provider_status_updated_at=now,
            delivered_at=now if delivered else None,
            failed_at=None if delivered else now,
            next_attempt_at=None,
            updated_at=now,
        )

    async def requeue(self, sms_id: str, *, now: datetime) -> bool:
        """Put a failed record back in the queue, keeping its retry count."""
        return await self.transition_status(
            sms_id,
            expected_status=SmsStatus.FAILED,
            new_status=SmsStatus.QUEUED,
            failed_at=None,
            next_attempt_at=None,
            dismissed_at=None,
            dismissed_by_user_id=None,
            updated_at=now,
        )

    async def cancel(self, sms_id: str, *, now: datetime) -> bool:
        """Cancel a record that has not been accepted by the provider."""
        return await self._conditional_update(
            SmsMessage.id == sms_id,
            SmsMessage.status.in_(_values(PENDING_STATES)),
            status=SmsStatus.CANCELLED.value,
            cancelled_at=now,
            next_attempt_at=None,
            updated_at=now,
        )

    async def set_dismissed(
        self,
        sms_id: str,
        *,
        dismissed: bool,
        user_id: Optional[str],
        now: datetime,
    ) -> bool:
        """
        Dismiss or restore a failure in the staff failure list.

        Only applies while the record is still failed or undelivered.
        """
        return await self._conditional_update(
            SmsMessage.id == sms_id,
            SmsMessage.status.in_(_values(FAILURE_STATES)),
            dismissed_at=now if dismissed else None,
            dismissed_by_user_id=user_id if dismissed else None,
            updated_at=now,
        )

    async def list_failures(self, *, dismissed: bool, limit: int = 100) -> List[SmsMessage]:
        """
        Get failed and undelivered records, newest first.

        Args:
            dismissed: List dismissed failures instead of active ones
            limit: Maximum number of records
        """
        dismissed_filter = (
            SmsMessage.dismissed_at.is_not(None) if dismissed else SmsMessage.dismissed_at.is_(None)
        )
        query = (
            select(SmsMessage)
            .where(and_(SmsMessage.status.in_(_values(FAILURE_STATES)), dismissed_filter))
            .order_by(SmsMessage.updated_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_for_parcel(self, parcel_id: str) -> List[SmsMessage]:
        """Get every record for a parcel, newest first."""
        query = (
            select(SmsMessage)
            .where(SmsMessage.parcel_id == parcel_id)
            .order_by(SmsMessage.created_at.desc())
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count_by_status(self) -> Dict[str, int]:
        """Count records per status; statuses with no records are reported as 0."""
        result = await self.session.execute(
            select(SmsMessage.status, func.count()).group_by(SmsMessage.status)
        )
        counts = {status.value: 0 for status in SmsStatus}
        for status, count in result.all():
            counts[status] = count
        return counts
