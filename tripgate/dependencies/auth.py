"""
Authentication dependencies for FastAPI.

Timer management routes require the shared gateway API key.
"""
import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from tripgate.config import settings
from tripgate.logging_config import get_logger

logger = get_logger(component="auth")

# Security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(api_key: str | None = Depends(api_key_header)) -> None:
    """
    Dependency that requires a valid X-API-Key header.

    Every request is rejected while API_KEY is not configured.

    Usage:
        @router.get("/protected", dependencies=[Depends(require_api_key)])
    """
    expected = settings.API_KEY
    if not expected:
        logger.error("api_key_not_configured")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )

    if not api_key or not hmac.compare_digest(api_key, expected):
        logger.warning("unauthorized_api_access")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
