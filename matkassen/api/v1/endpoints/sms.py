"""
Administrative API endpoints for the SMS queue.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from matkassen.api.v1.dependencies import (
    get_activity_monitor,
    get_queue_processor,
    get_scheduler,
    get_sms_service,
    get_webhook_reconciler,
    rate_limited_admin,
    require_admin,
)
from matkassen.core.config import settings
from matkassen.core.exceptions import NotFoundError
from matkassen.models.user import User
from matkassen.schemas.sms import (
    DismissRequest,
    FailureListStatus,
    ParcelSmsHistory,
    ProcessQueueResponse,
    SimulateCallbackRequest,
    SmsCreate,
    SmsFailureResponse,
    SmsResponse,
    SmsStatistics,
)
from matkassen.services.rate_limiter import SMS_RATE_LIMITS
from matkassen.services.sms.monitor import SmsActivityMonitor
from matkassen.services.sms.queue import QueueProcessor
from matkassen.services.sms.reconciler import WebhookReconciler
from matkassen.services.sms.scheduler import SmsScheduler
from matkassen.services.sms.service import SmsService
from matkassen.utils.datetime import format_datetime

router = APIRouter()
logger = logging.getLogger("matkassen.api.sms")


@router.post("/process-queue")
async def process_queue(
    current_user: User = Depends(rate_limited_admin("process-queue", SMS_RATE_LIMITS["QUEUE_PROCESSING"])),
    processor: QueueProcessor = Depends(get_queue_processor),
):
    """
    Run one queue processing pass now.

    Returns 200 when the pass ran or was skipped because another pass holds
    the lock, 500 when it failed.
    """
    logger.info(f"Manual queue processing triggered by {current_user.id}")
    result = await processor.process_queue()

    if not result.success:
        message = result.error or "Queue processing failed"
    elif not result.lock_acquired:
        message = "Queue processing already in progress"
    else:
        message = f"Processed {result.processed_count} messages"

    response = ProcessQueueResponse(
        success=result.success,
        message=message,
        processed_count=result.processed_count,
        lock_acquired=result.lock_acquired,
    )
    return JSONResponse(
        response.model_dump(by_alias=True),
        status_code=status.HTTP_200_OK if result.success else status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


@router.post("/simulate-callback")
async def simulate_callback(
    request: SimulateCallbackRequest,
    current_user: User = Depends(require_admin),
    service: SmsService = Depends(get_sms_service),
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
):
    """
    Feed a synthetic delivery report through the callback reconciler.

    Only available when simulated callbacks are enabled.
    """
    if not settings.SMS_ALLOW_SIMULATED_CALLBACKS:
        raise NotFoundError(message="Not Found")

    sms = await service.get(request.message_id)
    if not sms.provider_message_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="SMS has no provider message ID yet",
        )

    payload = {
        "apiMessageId": sms.provider_message_id,
        "status": "delivered" if request.delivered else "failed",
        "timestamp": format_datetime(),
        "callbackRef": "simulated",
    }
    logger.info(f"Simulating {payload['status']} callback for SMS {sms.id} by {current_user.id}")
    ack = await reconciler.handle_status_callback(payload)
    return JSONResponse(ack.body, status_code=ack.status_code)


@router.post("", response_model=SmsResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_sms(
    request: SmsCreate,
    current_user: User = Depends(rate_limited_admin("send", SMS_RATE_LIMITS["PARCEL_SMS"])),
    service: SmsService = Depends(get_sms_service),
):
    """
    Queue an SMS for sending.

    Requests with the same idempotency key return the existing record.
    """
    sms, _ = await service.enqueue(request)
    return sms


@router.get("/failures", response_model=List[SmsFailureResponse])
async def list_failures(
    failure_status: Optional[str] = Query("active", alias="status"),
    current_user: User = Depends(require_admin),
    service: SmsService = Depends(get_sms_service),
):
    """
    List failed and undelivered messages, newest first (max 100).
    """
    try:
        selected = FailureListStatus(failure_status)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid status parameter. Must be 'active' or 'dismissed'",
        )

    return await service.list_failures(dismissed=selected == FailureListStatus.DISMISSED)


@router.get("/statistics", response_model=SmsStatistics)
async def get_statistics(
    current_user: User = Depends(require_admin),
    service: SmsService = Depends(get_sms_service),
):
    """
    Count messages per status.
    """
    return await service.statistics()


@router.get("/health")
async def sms_health(
    current_user: User = Depends(require_admin),
    service: SmsService = Depends(get_sms_service),
    scheduler: Optional[SmsScheduler] = Depends(get_scheduler),
    monitor: Optional[SmsActivityMonitor] = Depends(get_activity_monitor),
):
    """
    Report SMS subsystem health.
    """
    details = {
        "scheduler_running": bool(scheduler and scheduler.is_running),
        "test_mode": settings.sms_test_mode,
        "timestamp": format_datetime(),
    }
    if scheduler is not None:
        details["scheduler"] = scheduler.health_check()
    if monitor is not None:
        details["activity"] = monitor.snapshot()

    try:
        details["pending_count"] = await service.pending_count()
    except SQLAlchemyError as e:
        logger.error(f"SMS health check could not reach the database: {e}", exc_info=True)
        details["error"] = "Database unavailable"
        return JSONResponse(
            {"status": "unhealthy", "details": details},
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return {"status": "healthy", "details": details}


@router.get("/parcel/{parcel_id}", response_model=ParcelSmsHistory)
async def get_parcel_sms(
    parcel_id: str,
    current_user: User = Depends(require_admin),
    service: SmsService = Depends(get_sms_service),
):
    """
    List every message sent for a parcel, newest first, and whether a
    pickup reminder already exists for it.
    """
    return await service.parcel_history(parcel_id)


@router.get("/{sms_id}", response_model=SmsResponse)
async def get_sms(
    sms_id: str,
    current_user: User = Depends(require_admin),
    service: SmsService = Depends(get_sms_service),
):
    """
    Get a single SMS record.
    """
    return await service.get(sms_id)


@router.post("/{sms_id}/requeue", response_model=SmsResponse)
async def requeue_sms(
    sms_id: str,
    current_user: User = Depends(
        rate_limited_admin("sms-retry", SMS_RATE_LIMITS["PARCEL_SMS"], identifier_param="sms_id")
    ),
    service: SmsService = Depends(get_sms_service),
):
    """
    Put a failed message back in the queue.
    """
    return await service.requeue(sms_id)


@router.post("/{sms_id}/cancel", response_model=SmsResponse)
async def cancel_sms(
    sms_id: str,
    current_user: User = Depends(require_admin),
    service: SmsService = Depends(get_sms_service),
):
    """
    Cancel a message that has not been sent yet.
    """
    return await service.cancel(sms_id)


@router.patch("/{sms_id}/dismiss", response_model=SmsResponse)
async def dismiss_sms(
    sms_id: str,
    request: DismissRequest,
    current_user: User = Depends(require_admin),
    service: SmsService = Depends(get_sms_service),
):
    """
    Dismiss a failure from the active list, or restore it.
    """
    return await service.set_dismissed(sms_id, dismissed=request.dismissed, user_id=str(current_user.id))
