"""API dependencies."""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Dict, Any
import httpx
import logging

from crm_sync.core.config import get_settings
from crm_sync.core.database import Database
from crm_sync.services.integration_service import IntegrationService
from crm_sync.services.sync_service import SyncService

logger = logging.getLogger(__name__)
settings = get_settings()

# Security
security = HTTPBearer()

ADMIN_ROLES = {"admin", "superadmin"}


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict[str, Any]:
    """Get current user from auth service."""
    token = credentials.credentials

    try:
        # Verify token with auth service
        async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
            response = await client.get(
                f"{settings.auth_service_url}/api/v1/users/me",
                headers={"Authorization": f"Bearer {token}"}
            )
    except httpx.RequestError as e:
        logger.error(f"Auth service request failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service unavailable"
        )

    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return response.json()


async def require_admin(current_user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    """Allow only administrators through."""
    if current_user.get("role") not in ADMIN_ROLES and not current_user.get("is_admin"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator access required",
        )
    return current_user


# Service dependencies
def get_database(request: Request) -> Database:
    return request.app.state.database


def get_integration_service(request: Request) -> IntegrationService:
    """Get integration service instance."""
    return request.app.state.integration_service


def get_sync_service(request: Request) -> SyncService:
    """Get sync service instance."""
    return request.app.state.sync_service
