"""
SMS queue processor.

One pass takes the queue lease, recovers attempts that were abandoned in
``sending``, then sends every due message and records the outcome.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from matkassen.core.config import Settings, settings as default_settings
from matkassen.db.repositories.locks import LockRepository
from matkassen.db.repositories.sms import SmsRepository
from matkassen.db.session import get_repository_context
from matkassen.models.sms import SmsMessage
from matkassen.schemas.sms import SmsStatus
from matkassen.services.event_bus.events import EventType
from matkassen.services.sms.provider import ProviderSendResult, SmsProviderClient
from matkassen.services.sms.status import apply_failure
from matkassen.utils.datetime import utc_now
from matkassen.utils.ids import generate_prefixed_id, IDPrefix

logger = logging.getLogger("matkassen.sms.queue")

QUEUE_LOCK_NAME = "sms-queue-processing"

STALE_SENDING_ERROR = "Send attempt did not complete before timeout"
GENERIC_FAILURE_MESSAGE = "Queue processing failed"


class LeaseLostError(Exception):
    """The queue lease was taken over while a pass was still running."""


class QueuePassAborted(Exception):
    """A pass stopped early. Carries how far it got and the first fault."""

    def __init__(self, processed_count: int, cause: Exception):
        super().__init__(str(cause))
        self.processed_count = processed_count
        self.cause = cause


@dataclass(frozen=True)
class QueueProcessingResult:
    """Summary of one processing pass."""
    success: bool
    processed_count: int = 0
    lock_acquired: bool = False
    error: Optional[str] = None


class QueueProcessor:
    """
    Sends due SMS records through a provider client.

    Only one pass runs at a time across all processes; the lease lives in
    the database so several app instances can share a queue. The lease is
    renewed after every message, so it only expires when its holder stops
    making progress.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        provider: SmsProviderClient,
        event_bus: Any = None,
        config: Settings = default_settings,
    ):
        """
        Initialize the processor.

        Args:
            session_factory: Factory for database sessions
            provider: Client used to hand messages to the SMS provider
            event_bus: Optional event bus for lifecycle events
            config: Application settings
        """
        self.session_factory = session_factory
        self.provider = provider
        self.event_bus = event_bus
        self.config = config

    async def process_queue(self) -> QueueProcessingResult:
        """
        Run one processing pass.

        Never raises: store and lock faults are logged and reported as
        ``success=False``.

        Returns:
            QueueProcessingResult: Pass summary
        """
        holder = generate_prefixed_id(IDPrefix.LOCK_HOLDER)

        try:
            acquired = await self._acquire_lock(holder)
        except SQLAlchemyError as e:
            logger.error(f"Could not acquire queue lock: {e}", exc_info=True)
            return QueueProcessingResult(success=False, error=GENERIC_FAILURE_MESSAGE)

        if not acquired:
            logger.info("Queue processing already in progress, skipping pass")
            return QueueProcessingResult(success=True, processed_count=0, lock_acquired=False)

        try:
            processed = await self._run_pass(holder)
        except QueuePassAborted as e:
            logger.error(
                f"Queue processing pass aborted after {e.processed_count} message(s): {e.cause}",
                exc_info=e.cause,
            )
            return QueueProcessingResult(
                success=False,
                processed_count=e.processed_count,
                lock_acquired=True,
                error=GENERIC_FAILURE_MESSAGE,
            )
        except SQLAlchemyError as e:
            logger.error(f"Queue processing pass aborted: {e}", exc_info=True)
            return QueueProcessingResult(success=False, lock_acquired=True, error=GENERIC_FAILURE_MESSAGE)
        except Exception as e:
            logger.error(f"Unexpected error during queue processing: {e}", exc_info=True)
            return QueueProcessingResult(success=False, lock_acquired=True, error=GENERIC_FAILURE_MESSAGE)
        finally:
            try:
                await self._release_lock(holder)
            except Exception as e:
                logger.error(f"Failed to release queue lock: {e}", exc_info=True)

        if processed:
            logger.info(f"Queue pass complete, {processed} message(s) processed")
        await self._publish(EventType.QUEUE_PROCESSED, {"processed_count": processed})
        return QueueProcessingResult(success=True, processed_count=processed, lock_acquired=True)

    async def _acquire_lock(self, holder: str) -> bool:
        async with get_repository_context(LockRepository, self.session_factory) as locks:
            return await locks.acquire(
                QUEUE_LOCK_NAME,
                holder,
                ttl_seconds=self.config.SMS_QUEUE_LOCK_TIMEOUT_SECONDS,
                now=utc_now(),
            )

    async def _release_lock(self, holder: str) -> None:
        async with get_repository_context(LockRepository, self.session_factory) as locks:
            released = await locks.release(QUEUE_LOCK_NAME, holder)
        if not released:
            logger.warning(f"Queue lock was no longer held by {holder} at release")

    async def _renew_lock(self, holder: str) -> bool:
        async with get_repository_context(LockRepository, self.session_factory) as locks:
            return await locks.renew(
                QUEUE_LOCK_NAME,
                holder,
                ttl_seconds=self.config.SMS_QUEUE_LOCK_TIMEOUT_SECONDS,
                now=utc_now(),
            )

    async def _run_pass(self, holder: str) -> int:
        """
        Recover stale attempts and send every due message.

        The first fault in any worker stops the pass: workers that have not
        claimed a message yet skip it, and the pass only returns once every
        worker has settled, so nothing is sent after the lease is released.

        Raises:
            QueuePassAborted: A worker hit a store fault or the lease was lost
        """
        processed = await self.recover_stale_sending()

        now = utc_now()
        async with get_repository_context(SmsRepository, self.session_factory) as repo:
            due = await repo.list_due(now=now, limit=self.config.SMS_QUEUE_BATCH_SIZE)

        if not due:
            logger.debug("No SMS due for sending")
            return processed

        logger.info(f"Processing {len(due)} due SMS message(s)")

        semaphore = asyncio.Semaphore(max(1, self.config.SMS_QUEUE_CONCURRENCY))
        delay = self.config.SMS_SEND_DELAY_SECONDS
        stop = asyncio.Event()
        faults: List[Exception] = []

        async def _worker(index: int, sms: SmsMessage) -> bool:
            async with semaphore:
                if stop.is_set():
                    return False

                try:
                    changed = await self._process_message(sms)
                except Exception as e:
                    stop.set()
                    faults.append(e)
                    return False

                try:
                    renewed = await self._renew_lock(holder)
                except Exception as e:
                    stop.set()
                    faults.append(e)
                    return changed
                if not renewed:
                    stop.set()
                    faults.append(LeaseLostError(f"Queue lock no longer held by {holder}"))
                    return changed

                if delay > 0 and index < len(due) - 1 and not stop.is_set():
                    await asyncio.sleep(delay)
                return changed

        results = await asyncio.gather(*[_worker(i, sms) for i, sms in enumerate(due)])
        processed += sum(1 for changed in results if changed)

        if faults:
            raise QueuePassAborted(processed, faults[0])
        return processed

    async def recover_stale_sending(self) -> int:
        """
        Apply the failure rule to attempts left in ``sending`` too long.

        Returns:
            int: Number of records moved out of ``sending``
        """
        now = utc_now()
        cutoff = now - timedelta(seconds=self.config.SMS_SENDING_TIMEOUT_SECONDS)
        recovered = 0

        async with get_repository_context(SmsRepository, self.session_factory) as repo:
            stale = await repo.find_stale_sending(cutoff=cutoff)
            for sms in stale:
                logger.warning(f"Recovering SMS {sms.id} stuck in sending since {sms.last_attempt_at}")
                if await self._record_failure(repo, sms, STALE_SENDING_ERROR):
                    recovered += 1

        return recovered

    async def _process_message(self, sms: SmsMessage) -> bool:
        """Send one message. Returns True if its state moved to sent/retrying/failed."""
        async with get_repository_context(SmsRepository, self.session_factory) as repo:
            claimed = await repo.mark_sending(sms.id, expected_status=SmsStatus(sms.status), now=utc_now())
        if not claimed:
            logger.info(f"SMS {sms.id} changed state before sending, skipping")
            return False

        try:
            result = await self.provider.send(sms.to_e164, sms.text)
        except Exception as e:
            logger.warning(f"Provider error for SMS {sms.id}: {e}", exc_info=True)
            result = ProviderSendResult(accepted=False, error=str(e) or type(e).__name__)

        async with get_repository_context(SmsRepository, self.session_factory) as repo:
            if result.accepted:
                now = utc_now()
                updated = await repo.mark_sent(
                    sms.id,
                    provider_message_id=result.provider_message_id,
                    now=now,
                )
                if updated:
                    logger.info(f"SMS {sms.id} sent, provider id {result.provider_message_id}")
                    await self._publish(EventType.SMS_SENT, {
                        "sms_id": sms.id,
                        "provider_message_id": result.provider_message_id,
                    })
                return updated

            error = result.error or "Unknown provider error"
            if result.http_status:
                error = f"{error} (HTTP {result.http_status})"
            return await self._record_failure(repo, sms, error)

    async def _record_failure(self, repo: SmsRepository, sms: SmsMessage, error: str) -> bool:
        now = utc_now()
        outcome = apply_failure(
            sms.retry_count,
            max_retries=self.config.SMS_MAX_RETRIES,
            backoff_seconds=self.config.SMS_RETRY_BACKOFF_SECONDS,
            now=now,
        )
        updated = await repo.mark_send_failure(
            sms.id,
            observed_retry_count=sms.retry_count,
            outcome=outcome,
            error_message=error,
            now=now,
        )
        if not updated:
            logger.info(f"SMS {sms.id} failure not recorded, row changed concurrently")
            return False

        if outcome.status == SmsStatus.FAILED:
            logger.error(f"SMS {sms.id} failed permanently after {outcome.retry_count} attempt(s): {error}")
            event = EventType.SMS_FAILED
        else:
            logger.warning(
                f"SMS {sms.id} attempt {outcome.retry_count} failed: {error}; "
                f"next attempt at {outcome.next_attempt_at.isoformat()}"
            )
            event = EventType.SMS_RETRYING

        await self._publish(event, {
            "sms_id": sms.id,
            "retry_count": outcome.retry_count,
            "error": error,
        })
        return True

    async def _publish(self, event_type: EventType, data: dict) -> None:
        if self.event_bus is not None:
            await self.event_bus.publish(event_type, data)
