"""CRM integration admin API endpoints."""

from fastapi import APIRouter, HTTPException, status, Depends, Query
from fastapi.responses import RedirectResponse
from typing import List, Optional, Dict
from datetime import datetime
import logging
import urllib.parse

from crm_sync.core.config import get_settings
from crm_sync.integrations.base import (
    MappingTransformError,
    OAuthExchangeError,
    SyncLogNotFoundError,
)
from crm_sync.models import SyncStatus
from crm_sync.schemas.integration import (
    ConnectionTestResponse,
    FieldMappingResponse,
    FieldMappingsUpdate,
    IntegrationOverview,
    IntegrationResponse,
    SyncLogResponse,
    SyncResultResponse,
    SyncStats,
    ToggleRequest,
)
from crm_sync.schemas.session import SessionSummary
from crm_sync.services.integration_service import IntegrationNotFoundError, IntegrationService
from crm_sync.services.sync_service import SyncService
from crm_sync.utils.crypto import OAuthStateError
from crm_sync.api.dependencies import get_integration_service, get_sync_service, require_admin

logger = logging.getLogger(__name__)
router = APIRouter()
settings = get_settings()


def _not_found(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _admin_redirect(**params: str) -> RedirectResponse:
    return RedirectResponse(
        f"{settings.admin_ui_url}?{urllib.parse.urlencode(params)}",
        status_code=status.HTTP_303_SEE_OTHER,
    )


@router.get("/", response_model=List[IntegrationOverview])
async def list_integrations(
    current_user=Depends(require_admin),
    service: IntegrationService = Depends(get_integration_service),
):
    """List CRM integrations with their sync stats."""
    return await service.list_integrations()


@router.get("/{provider}/connect")
async def connect(
    provider: str,
    current_user=Depends(require_admin),
    service: IntegrationService = Depends(get_integration_service),
):
    """Redirect to the provider's OAuth authorize page."""
    try:
        url = service.build_connect_url(provider, user_id=str(current_user.get("id", "")) or None)
    except IntegrationNotFoundError as e:
        raise _not_found(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    service: IntegrationService = Depends(get_integration_service),
):
    """Handle the OAuth redirect; the signed state authenticates the request."""
    if error:
        return _admin_redirect(error=error)
    if not code or not state:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing authorization code or state",
        )

    try:
        integration = await service.complete_oauth(provider, code, state)
    except IntegrationNotFoundError as e:
        raise _not_found(e)
    except OAuthStateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except OAuthExchangeError as e:
        logger.error(f"OAuth exchange failed: {e}", extra={"provider": provider})
        return _admin_redirect(error=str(e))

    return _admin_redirect(success=f"{integration.name} connected successfully")


@router.post("/{provider}/toggle", response_model=IntegrationResponse)
async def toggle_integration(
    provider: str,
    body: ToggleRequest,
    current_user=Depends(require_admin),
    service: IntegrationService = Depends(get_integration_service),
):
    """Enable or disable syncing to a provider."""
    try:
        return await service.toggle(provider, body.enabled)
    except IntegrationNotFoundError as e:
        raise _not_found(e)


@router.post("/{provider}/test", response_model=ConnectionTestResponse)
async def test_connection(
    provider: str,
    current_user=Depends(require_admin),
    service: IntegrationService = Depends(get_integration_service),
):
    """Test the provider connection."""
    try:
        result = await service.test_connection(provider)
    except IntegrationNotFoundError as e:
        raise _not_found(e)

    return ConnectionTestResponse(ok=result.ok, detail=result.detail, tested_at=datetime.utcnow())


@router.post("/{provider}/disconnect", response_model=IntegrationResponse)
async def disconnect(
    provider: str,
    current_user=Depends(require_admin),
    service: IntegrationService = Depends(get_integration_service),
):
    """Clear stored tokens for a provider."""
    try:
        return await service.disconnect(provider)
    except IntegrationNotFoundError as e:
        raise _not_found(e)


@router.get("/{provider}/logs", response_model=List[SyncLogResponse])
async def list_sync_logs(
    provider: str,
    sync_status: Optional[SyncStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    current_user=Depends(require_admin),
    integration_service: IntegrationService = Depends(get_integration_service),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Recent sync logs, newest first."""
    try:
        await integration_service.get_integration(provider)
    except IntegrationNotFoundError as e:
        raise _not_found(e)
    return await sync_service.get_recent_sync_logs(provider, limit=limit, status=sync_status)


@router.get("/{provider}/stats", response_model=SyncStats)
async def get_sync_stats(
    provider: str,
    current_user=Depends(require_admin),
    integration_service: IntegrationService = Depends(get_integration_service),
    sync_service: SyncService = Depends(get_sync_service),
):
    try:
        await integration_service.get_integration(provider)
    except IntegrationNotFoundError as e:
        raise _not_found(e)
    return await sync_service.get_sync_stats(provider)


@router.post("/sync-logs/{sync_log_id}/retry", response_model=SyncResultResponse)
async def retry_sync(
    sync_log_id: int,
    current_user=Depends(require_admin),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Replay a failed sync."""
    try:
        result = await sync_service.retry(sync_log_id)
    except SyncLogNotFoundError as e:
        raise _not_found(e)

    return SyncResultResponse(success=result.success, external_id=result.external_id, error=result.error)


@router.get("/{provider}/mappings", response_model=List[FieldMappingResponse])
async def get_mappings(
    provider: str,
    current_user=Depends(require_admin),
    service: IntegrationService = Depends(get_integration_service),
):
    try:
        return await service.get_mappings(provider)
    except IntegrationNotFoundError as e:
        raise _not_found(e)


@router.put("/{provider}/mappings", response_model=List[FieldMappingResponse])
async def save_mappings(
    provider: str,
    body: FieldMappingsUpdate,
    current_user=Depends(require_admin),
    service: IntegrationService = Depends(get_integration_service),
):
    """Replace all field mappings of a provider."""
    try:
        return await service.save_mappings(provider, body.mappings)
    except IntegrationNotFoundError as e:
        raise _not_found(e)
    except MappingTransformError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.post("/sessions/sync", response_model=Dict[str, SyncResultResponse])
async def sync_completed_session(
    summary: SessionSummary,
    current_user=Depends(require_admin),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Session-completed event: deliver the summary to every active CRM."""
    results = await sync_service.on_session_completed(summary)
    return {
        provider: SyncResultResponse(success=r.success, external_id=r.external_id, error=r.error)
        for provider, r in results.items()
    }
