import pytest

from matkassen.services.event_bus.bus import EventBus
from matkassen.services.event_bus.events import EventType
from matkassen.services.sms.monitor import SmsActivityMonitor


@pytest.mark.asyncio
async def test_counts_lifecycle_events():
    bus = EventBus()
    monitor = SmsActivityMonitor(bus)
    await monitor.start()

    await bus.publish(EventType.SMS_SENT, {"sms_id": "sms-1"})
    await bus.publish(EventType.SMS_SENT, {"sms_id": "sms-2"})
    await bus.publish(EventType.SMS_FAILED, {"sms_id": "sms-3"})
    await bus.publish(EventType.SMS_DELIVERED, {"sms_id": "sms-1"})
    await bus.publish(EventType.QUEUE_PROCESSED, {"processed_count": 3})

    snapshot = monitor.snapshot()
    assert snapshot["counters"] == {
        "sent": 2,
        "retrying": 0,
        "failed": 1,
        "delivered": 1,
        "not_delivered": 0,
    }
    assert snapshot["queue_passes"] == 1
    assert snapshot["last_pass_processed"] == 3
    assert snapshot["last_pass_at"] is not None
    assert snapshot["subscribers"] == 6
    assert [e["event_type"] for e in snapshot["recent_events"]][-1] == "queue:processed"
    assert snapshot["failed_deliveries"] == {}


@pytest.mark.asyncio
async def test_start_twice_does_not_double_count():
    bus = EventBus()
    monitor = SmsActivityMonitor(bus)
    await monitor.start()
    await monitor.start()

    await bus.publish(EventType.SMS_SENT, {"sms_id": "sms-1"})

    assert monitor.snapshot()["counters"]["sent"] == 1
    assert bus.get_subscriber_count(EventType.SMS_SENT) == 1


@pytest.mark.asyncio
async def test_stop_unsubscribes():
    bus = EventBus()
    monitor = SmsActivityMonitor(bus)
    await monitor.start()
    await monitor.stop()

    await bus.publish(EventType.SMS_SENT, {"sms_id": "sms-1"})

    assert monitor.snapshot()["counters"]["sent"] == 0
    assert bus.get_subscriber_count() == 0


@pytest.mark.asyncio
async def test_reports_failing_subscribers_on_the_bus():
    bus = EventBus()
    monitor = SmsActivityMonitor(bus)
    await monitor.start()

    async def broken(data):
        raise RuntimeError("boom")

    await bus.subscribe(EventType.SMS_FAILED, broken, subscriber_id="broken")
    await bus.publish(EventType.SMS_FAILED, {"sms_id": "sms-1"})

    snapshot = monitor.snapshot()
    assert snapshot["counters"]["failed"] == 1
    assert list(snapshot["failed_deliveries"]) == ["broken"]
