"""
In-process SMS activity monitor.

Listens to lifecycle events on the event bus and keeps counters since
startup for the health endpoint.
"""
import logging
from typing import Any, Dict, List, Optional

from matkassen.services.event_bus.bus import EventBus
from matkassen.services.event_bus.events import EventType
from matkassen.utils.datetime import format_datetime

logger = logging.getLogger("matkassen.sms.monitor")

MONITORED_EVENTS = {
    EventType.SMS_SENT: "sent",
    EventType.SMS_RETRYING: "retrying",
    EventType.SMS_FAILED: "failed",
    EventType.SMS_DELIVERED: "delivered",
    EventType.SMS_NOT_DELIVERED: "not_delivered",
}

RECENT_EVENT_LIMIT = 10


class SmsActivityMonitor:
    """Counts SMS outcomes and queue passes seen on the event bus."""

    def __init__(self, event_bus: EventBus):
        self.event_bus = event_bus
        self.counters: Dict[str, int] = {name: 0 for name in MONITORED_EVENTS.values()}
        self.passes = 0
        self.last_pass_at: Optional[str] = None
        self.last_pass_processed = 0
        self._subscriptions: List[tuple] = []

    async def start(self) -> None:
        """Subscribe to lifecycle events. Calling it twice is harmless."""
        for event_type in MONITORED_EVENTS:
            await self._subscribe(event_type, self._handle_sms_event)
        await self._subscribe(EventType.QUEUE_PROCESSED, self._handle_queue_processed)
        logger.info("SMS activity monitor started")

    async def stop(self) -> None:
        for event_type, subscriber_id in self._subscriptions:
            await self.event_bus.unsubscribe(event_type, subscriber_id)
        self._subscriptions = []
        logger.info("SMS activity monitor stopped")

    async def _subscribe(self, event_type: EventType, callback) -> None:
        subscriber_id = f"sms.monitor.{event_type.value}"
        await self.event_bus.subscribe(event_type, callback, subscriber_id)
        if (event_type, subscriber_id) not in self._subscriptions:
            self._subscriptions.append((event_type, subscriber_id))

    async def _handle_sms_event(self, data: Dict[str, Any]) -> None:
        name = MONITORED_EVENTS[EventType(data["event_type"])]
        self.counters[name] += 1

    async def _handle_queue_processed(self, data: Dict[str, Any]) -> None:
        self.passes += 1
        self.last_pass_at = data.get("timestamp")
        self.last_pass_processed = data.get("processed_count", 0)

    def snapshot(self) -> Dict[str, Any]:
        """
        Summarize activity since startup.

        Returns:
            Dict[str, Any]: Outcome counters, the last completed queue pass,
            recent events and any handler failures on the bus
        """
        failed_deliveries = {
            subscriber_id: failures
            for subscriber_id, failures in self.event_bus.get_failed_deliveries().items()
            if failures
        }
        return {
            "counters": dict(self.counters),
            "queue_passes": self.passes,
            "last_pass_at": self.last_pass_at,
            "last_pass_processed": self.last_pass_processed,
            "subscribers": self.event_bus.get_subscriber_count(),
            "recent_events": [
                {"event_type": event["event_type"], "timestamp": event["timestamp"]}
                for event in self.event_bus.get_event_history(RECENT_EVENT_LIMIT)
            ],
            "failed_deliveries": failed_deliveries,
            "generated_at": format_datetime(),
        }
