"""
Background loop that runs the SMS queue processor on an interval.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from matkassen.services.sms.queue import QueueProcessor, QueueProcessingResult
from matkassen.utils.datetime import format_datetime, utc_now

logger = logging.getLogger("matkassen.sms.scheduler")


class SmsScheduler:
    """
    Periodically triggers queue processing.

    Runs in the application's event loop; several app instances may each
    run one, since the processor's lease lock serializes the passes.
    """

    def __init__(self, processor: QueueProcessor, interval_seconds: float):
        """
        Initialize the scheduler.

        Args:
            processor: Queue processor to run
            interval_seconds: Pause between passes
        """
        self.processor = processor
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.last_run_at: Optional[datetime] = None
        self.last_result: Optional[QueueProcessingResult] = None

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the loop as a background task."""
        if self.is_running:
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"SMS scheduler started, interval {self.interval_seconds}s")

    async def stop(self) -> None:
        """Stop the loop and wait for the current pass to finish or cancel."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("SMS scheduler stopped")

    async def run_once(self) -> QueueProcessingResult:
        """Run a single pass and remember its result."""
        result = await self.processor.process_queue()
        self.last_run_at = utc_now()
        self.last_result = result

        if not result.success:
            logger.error(f"Scheduled queue pass failed: {result.error}")
        elif not result.lock_acquired:
            logger.debug("Scheduled queue pass skipped, another pass holds the lock")
        return result

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in SMS scheduler: {e}", exc_info=True)

            await asyncio.sleep(self.interval_seconds)

    def health_check(self) -> Dict[str, Any]:
        """
        Report scheduler state.

        Returns:
            Dict: ``{"status": ..., "details": {...}}``
        """
        details: Dict[str, Any] = {
            "running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "last_run_at": format_datetime(self.last_run_at) if self.last_run_at else None,
        }
        if self.last_result is not None:
            details["last_result"] = {
                "success": self.last_result.success,
                "processed_count": self.last_result.processed_count,
                "lock_acquired": self.last_result.lock_acquired,
            }

        status = "healthy"
        if self.last_result is not None and not self.last_result.success:
            status = "degraded"
        return {"status": status, "details": details}
