"""
Bearer token guard for the trigger endpoints.
"""

import secrets
from typing import Optional

import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from api.config import config as api_config

logger = structlog.get_logger(__name__)

security = HTTPBearer(auto_error=False)


async def verify_api_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    """
    Verify the shared API token.

    Args:
        credentials: HTTP authorization credentials

    Returns:
        The presented token, or None when no token is configured

    Raises:
        HTTPException: If the token is missing or wrong
    """
    expected = api_config.token
    if not expected:
        return None

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not secrets.compare_digest(credentials.credentials, expected):
        logger.warning("Invalid API token presented")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return credentials.credentials
