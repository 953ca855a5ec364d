"""
Event bus implementation for asynchronous messaging between components.
"""
import asyncio
import logging
import uuid
from typing import Dict, List, Callable, Any, Set, Optional, Tuple
from datetime import datetime, timezone

logger = logging.getLogger("matkassen.eventbus")


class EventBus:
    """
    In-process event bus.

    Subscribers are awaited one after another; a failing subscriber is
    logged and recorded but never breaks the publisher.
    """

    def __init__(self):
        """Initialize the event bus."""
        self._subscribers: Dict[str, List[Tuple[str, Callable]]] = {}
        self._subscriber_ids: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()
        self._initialized = False
        self._event_history: List[Dict[str, Any]] = []  # For debugging
        self._max_history = 100  # Maximum events to keep in history
        self._failed_deliveries: Dict[str, List[Dict[str, Any]]] = {}

    async def initialize(self) -> None:
        """Initialize the event bus."""
        if self._initialized:
            return

        logger.info("Initializing event bus")
        self._initialized = True

    async def shutdown(self) -> None:
        """Shutdown the event bus and clean up resources."""
        logger.info("Shutting down event bus")
        self._initialized = False

        async with self._lock:
            self._subscribers.clear()
            self._subscriber_ids.clear()

    async def publish(self, event_type: str, data: Dict[str, Any]) -> bool:
        """
        Publish an event to subscribers.

        Args:
            event_type: Type of event
            data: Event data

        Returns:
            bool: True if every subscriber handled the event
        """
        if not self._initialized:
            await self.initialize()

        event_type = getattr(event_type, "value", event_type)

        async with self._lock:
            subscribers = list(self._subscribers.get(event_type, []))

        data.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        data["event_type"] = event_type
        data["event_id"] = str(uuid.uuid4())

        if len(self._event_history) >= self._max_history:
            self._event_history.pop(0)
        self._event_history.append({
            "event_type": event_type,
            "data": data,
            "subscribers": [sid for sid, _ in subscribers],
            "timestamp": data["timestamp"]
        })

        if not subscribers:
            logger.debug(f"No subscribers for event: {event_type}")
            return True

        logger.debug(f"Publishing event {event_type} to {len(subscribers)} subscribers")

        all_successful = True

        for subscriber_id, callback in subscribers:
            try:
                await callback(data)
            except asyncio.CancelledError:
                logger.warning(f"Subscriber {subscriber_id} was cancelled during event {event_type}")
                raise
            except Exception as e:
                logger.error(f"Error in subscriber {subscriber_id} for {event_type}: {e}", exc_info=True)

                failures = self._failed_deliveries.setdefault(subscriber_id, [])
                failures.append({
                    "event_type": event_type,
                    "event_id": data["event_id"],
                    "error": str(e),
                    "timestamp": datetime.now(timezone.utc).isoformat()
                })
                if len(failures) > self._max_history:
                    failures.pop(0)

                all_successful = False

        return all_successful

    async def subscribe(
        self,
        event_type: str,
        callback: Callable,
        subscriber_id: Optional[str] = None
    ) -> str:
        """
        Subscribe to an event type.

        Args:
            event_type: Event type to subscribe to
            callback: Coroutine function called with the event data
            subscriber_id: Optional subscriber ID

        Returns:
            str: Subscriber ID
        """
        if not self._initialized:
            await self.initialize()

        event_type = getattr(event_type, "value", event_type)

        if subscriber_id is None:
            subscriber_id = f"{callback.__module__}.{callback.__name__}_{str(uuid.uuid4())[:8]}"

        async with self._lock:
            subscribers = self._subscribers.setdefault(event_type, [])
            ids = self._subscriber_ids.setdefault(event_type, set())

            if subscriber_id not in ids:
                subscribers.append((subscriber_id, callback))
                ids.add(subscriber_id)
                logger.info(f"Subscribed to {event_type}: {subscriber_id}")
            else:
                for i, (sid, _) in enumerate(subscribers):
                    if sid == subscriber_id:
                        subscribers[i] = (subscriber_id, callback)
                        break

        return subscriber_id

    async def unsubscribe(self, event_type: str, subscriber_id: str) -> bool:
        """
        Unsubscribe from an event type.

        Returns:
            bool: True if unsubscribed, False if not found
        """
        event_type = getattr(event_type, "value", event_type)

        async with self._lock:
            if subscriber_id not in self._subscriber_ids.get(event_type, set()):
                return False

            self._subscribers[event_type] = [
                (sid, callback) for sid, callback in self._subscribers[event_type]
                if sid != subscriber_id
            ]
            self._subscriber_ids[event_type].remove(subscriber_id)
            self._failed_deliveries.pop(subscriber_id, None)

        logger.info(f"Unsubscribed from {event_type}: {subscriber_id}")
        return True

    def get_subscriber_count(self, event_type: Optional[str] = None) -> int:
        """Get the number of subscribers, optionally for one event type."""
        if event_type:
            return len(self._subscribers.get(getattr(event_type, "value", event_type), []))
        return sum(len(subscribers) for subscribers in self._subscribers.values())

    def get_event_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        """
        Get recent event history for debugging.

        Args:
            limit: Maximum number of events to return

        Returns:
            List[Dict]: Recent events
        """
        return self._event_history[-limit:] if self._event_history else []

    def get_failed_deliveries(self, subscriber_id: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Get failed event deliveries, optionally for one subscriber."""
        if subscriber_id:
            return {subscriber_id: self._failed_deliveries.get(subscriber_id, [])}
        return self._failed_deliveries


# Singleton instance
_event_bus = EventBus()

def get_event_bus() -> EventBus:
    """Get the singleton event bus instance."""
    return _event_bus
