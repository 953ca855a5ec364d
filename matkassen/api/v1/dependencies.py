"""
Dependencies for API endpoints.
"""
import logging
from typing import Callable, Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from matkassen.core.config import settings
from matkassen.core.exceptions import AuthenticationError, AuthorizationError, RateLimitExceededError
from matkassen.core.security import decode_access_token
from matkassen.db.repositories.users import UserRepository
from matkassen.db.session import get_db, get_session_factory
from matkassen.models.user import User
from matkassen.schemas.user import TokenData, UserRole
from matkassen.services.event_bus.bus import get_event_bus
from matkassen.services.rate_limiter import (
    RateLimiter,
    RateLimitConfig,
    get_sms_rate_limit_key,
)
from matkassen.services.sms.monitor import SmsActivityMonitor
from matkassen.services.sms.provider import SmsProviderClient, get_sms_provider_client
from matkassen.services.sms.queue import QueueProcessor
from matkassen.services.sms.reconciler import WebhookReconciler
from matkassen.services.sms.scheduler import SmsScheduler
from matkassen.services.sms.service import SmsService
from matkassen.utils.datetime import from_epoch_ms

logger = logging.getLogger("matkassen.api")

# OAuth2 scheme for token authentication
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_PREFIX}/auth/token")


async def get_user_repository(session: AsyncSession = Depends(get_db)) -> UserRepository:
    """Get user repository bound to the request session."""
    return UserRepository(session)


def get_rate_limiter(request: Request) -> RateLimiter:
    """Get the application's rate limiter."""
    return request.app.state.rate_limiter


def get_scheduler(request: Request) -> Optional[SmsScheduler]:
    """Get the background scheduler if one was started."""
    return getattr(request.app.state, "sms_scheduler", None)


def get_activity_monitor(request: Request) -> Optional[SmsActivityMonitor]:
    """Get the SMS activity monitor if one was started."""
    return getattr(request.app.state, "sms_monitor", None)


def get_provider_client() -> SmsProviderClient:
    """Get the SMS provider client for the current configuration."""
    return get_sms_provider_client(settings)


def get_queue_processor(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    provider: SmsProviderClient = Depends(get_provider_client),
) -> QueueProcessor:
    """Get a queue processor."""
    return QueueProcessor(session_factory, provider, event_bus=get_event_bus(), config=settings)


def get_webhook_reconciler(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> WebhookReconciler:
    """Get the delivery callback reconciler."""
    return WebhookReconciler(session_factory, event_bus=get_event_bus())


def get_sms_service(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> SmsService:
    """Get the operator SMS service."""
    return SmsService(session_factory, event_bus=get_event_bus(), config=settings)


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    user_repository: UserRepository = Depends(get_user_repository)
) -> User:
    """
    Get the current authenticated user from the JWT token.

    Args:
        token: JWT token from Authorization header
        user_repository: User repository for database access

    Returns:
        User: The authenticated user

    Raises:
        AuthenticationError: If the token is invalid or expired
    """
    try:
        token_data = TokenData(**decode_access_token(token))
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.PyJWTError:
        raise AuthenticationError("Invalid token")

    user = await user_repository.get_by_id(token_data.sub)
    if not user:
        raise AuthenticationError("User not found")

    if not user.is_active:
        raise AuthenticationError("User is inactive")

    return user


async def require_admin(
    current_user: User = Depends(get_current_user)
) -> User:
    """
    Require the current user to be an administrator.

    Raises:
        AuthorizationError: If the user is not an admin
    """
    if current_user.role != UserRole.ADMIN.value:
        raise AuthorizationError("Administrator role required")
    return current_user


def rate_limited_admin(endpoint: str, limit: RateLimitConfig, identifier_param: Optional[str] = None) -> Callable:
    """
    Build a dependency that authenticates an admin and counts the request
    against ``limit``.

    The budget is per admin. When ``identifier_param`` names a path
    parameter, each value of that parameter gets a separate budget too.

    Usage:
        @router.post("/process-queue")
        async def endpoint(user = Depends(rate_limited_admin("process-queue", SMS_RATE_LIMITS["QUEUE_PROCESSING"]))):
            ...
    """
    async def _check(
        request: Request,
        current_user: User = Depends(require_admin),
        rate_limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> User:
        identifier = request.path_params.get(identifier_param) if identifier_param else None
        key = get_sms_rate_limit_key(endpoint, str(current_user.id), identifier)
        result = rate_limiter.check(key, limit)
        if not result.allowed:
            logger.warning(f"Rate limit exceeded for user {current_user.id} on {endpoint}")
            raise RateLimitExceededError(
                message=result.error,
                retry_after=result.retry_after_seconds(rate_limiter.now()),
                details={
                    "limit": limit.max_requests,
                    "remaining": result.remaining,
                    "reset": from_epoch_ms(result.reset_time).isoformat(),
                },
            )
        return current_user

    return _check
