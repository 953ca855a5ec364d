"""
Provider delivery status callbacks.

The provider cannot send auth headers, so the callback URL carries a
secret path segment instead.
"""
import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from matkassen.api.v1.dependencies import get_webhook_reconciler
from matkassen.core.config import settings
from matkassen.core.security import verify_callback_secret
from matkassen.services.sms.reconciler import WebhookReconciler

router = APIRouter()
logger = logging.getLogger("matkassen.webhooks")


@router.post("/sms-status/{secret}")
async def sms_status_callback(
    secret: str,
    request: Request,
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
):
    """
    Receive a delivery report from HelloSMS.

    Returns 200 for everything except malformed payloads, so the provider
    does not keep retrying reports we cannot use.
    """
    if not verify_callback_secret(secret, settings.SMS_CALLBACK_SECRET):
        # Indistinguishable from a missing route
        logger.warning("SMS status callback with invalid secret")
        return PlainTextResponse("Not Found", status_code=404)

    body = await request.body()
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        logger.warning("SMS status callback with invalid JSON body")
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)

    ack = await reconciler.handle_status_callback(payload)
    return JSONResponse(ack.body, status_code=ack.status_code)
