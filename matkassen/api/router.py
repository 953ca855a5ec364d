"""
Main API router that includes all endpoint routers.
"""
from fastapi import APIRouter

from matkassen.api.v1.endpoints import auth, sms, webhooks


# Create main API router
api_router = APIRouter()

# Include all endpoint routers with appropriate tags
api_router.include_router(
    auth.router,
    prefix="/auth",
    tags=["Authentication"]
)
api_router.include_router(
    sms.router,
    prefix="/admin/sms",
    tags=["SMS"]
)
api_router.include_router(
    webhooks.router,
    prefix="/webhooks",
    tags=["Webhooks"]
)
