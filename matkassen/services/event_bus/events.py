"""
Event type definitions for the event bus.
"""
from enum import Enum


class EventType(str, Enum):
    """Event types for the event bus."""

    # System events
    SYSTEM_STARTUP = "system:startup"
    SYSTEM_SHUTDOWN = "system:shutdown"

    # SMS lifecycle events
    SMS_QUEUED = "sms:queued"
    SMS_SENT = "sms:sent"
    SMS_RETRYING = "sms:retrying"
    SMS_FAILED = "sms:failed"
    SMS_DELIVERED = "sms:delivered"
    SMS_NOT_DELIVERED = "sms:not_delivered"
    SMS_CANCELLED = "sms:cancelled"
    SMS_REQUEUED = "sms:requeued"

    # Queue events
    QUEUE_PROCESSED = "queue:processed"
