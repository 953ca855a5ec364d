"""
Event handlers for application lifecycle events.
"""
import logging

from fastapi import FastAPI

from matkassen.core.config import settings
from matkassen.services.event_bus.bus import get_event_bus
from matkassen.services.event_bus.events import EventType
from matkassen.services.sms.monitor import SmsActivityMonitor
from matkassen.services.sms.provider import get_sms_provider_client, validate_sms_configuration

logger = logging.getLogger("matkassen")


async def startup_event_handler(app: FastAPI) -> None:
    """
    Handle application startup.

    Validate SMS configuration, initialize the database and event bus, and
    start the queue scheduler when enabled.
    """
    logger.info(f"Starting {settings.PROJECT_NAME}")

    # Misconfigured SMS credentials must stop the process
    validate_sms_configuration(settings)

    try:
        from matkassen.db.session import initialize_database
        await initialize_database()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        # Don't raise error to allow startup to continue

    event_bus = get_event_bus()
    await event_bus.initialize()
    await event_bus.publish(EventType.SYSTEM_STARTUP, {"version": settings.VERSION})

    monitor = SmsActivityMonitor(event_bus)
    await monitor.start()
    app.state.sms_monitor = monitor

    if settings.SMS_SCHEDULER_ENABLED:
        try:
            from matkassen.db.session import async_session_factory
            from matkassen.services.sms.queue import QueueProcessor
            from matkassen.services.sms.scheduler import SmsScheduler

            processor = QueueProcessor(
                async_session_factory,
                get_sms_provider_client(settings),
                event_bus=event_bus,
                config=settings,
            )
            scheduler = SmsScheduler(processor, settings.SMS_SEND_INTERVAL_SECONDS)
            await scheduler.start()
            app.state.sms_scheduler = scheduler
            logger.info("SMS scheduler started successfully")
        except Exception as e:
            logger.error(f"Error starting SMS scheduler: {e}", exc_info=True)

    logger.info(f"{settings.PROJECT_NAME} v{settings.VERSION} startup complete")


async def shutdown_event_handler(app: FastAPI) -> None:
    """
    Handle application shutdown.

    Stop the scheduler and close connections properly.
    """
    logger.info(f"Shutting down {settings.PROJECT_NAME}")

    scheduler = getattr(app.state, "sms_scheduler", None)
    if scheduler is not None:
        await scheduler.stop()
        app.state.sms_scheduler = None

    monitor = getattr(app.state, "sms_monitor", None)
    if monitor is not None:
        await monitor.stop()
        app.state.sms_monitor = None

    event_bus = get_event_bus()
    try:
        await event_bus.publish(EventType.SYSTEM_SHUTDOWN, {
            "reason": "Application shutdown",
            "graceful": True
        })
    except Exception as e:
        logger.error(f"Error publishing shutdown event: {e}")
    await event_bus.shutdown()

    try:
        from matkassen.db.session import close_database_connections
        await close_database_connections()
    except Exception as e:
        logger.error(f"Error closing database connections: {e}")

    logger.info("Application shutdown complete")
