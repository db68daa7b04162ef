"""Integration API schemas."""

from datetime import datetime
from typing import Optional, Dict, Any, List, Union
from pydantic import BaseModel, Field

from crm_sync.models import TransformType


class IntegrationResponse(BaseModel):
    """Integration response schema. Tokens are never exposed."""
    id: int
    provider: str
    name: str
    description: Optional[str] = None
    is_enabled: bool
    is_connected: bool
    token_expires_at: Optional[datetime] = None
    instance_url: Optional[str] = None
    portal_id: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None

    class Config:
        from_attributes = True


class SyncStats(BaseModel):
    """Sync log counts for one integration."""
    total: int = 0
    success: int = 0
    failed: int = 0
    pending: int = 0
    last_sync: Optional[datetime] = None


class IntegrationOverview(BaseModel):
    """Integration with its configuration state and stats."""
    integration: IntegrationResponse
    configured: bool
    stats: Optional[SyncStats] = None


class ToggleRequest(BaseModel):
    """Enable or disable an integration."""
    enabled: bool


class ConnectionTestResponse(BaseModel):
    """Connection test response."""
    ok: bool
    detail: Dict[str, Any] = Field(default_factory=dict)
    tested_at: datetime


class FieldMappingIn(BaseModel):
    """Field mapping as written by the admin surface."""
    source_field: str = Field(alias="sourceField")
    target_object: str = Field(alias="targetObject")
    target_field: str = Field(alias="targetField")
    transform_type: TransformType = Field(default=TransformType.NONE, alias="transformType")
    transform_config: Optional[Union[Dict[str, Any], str]] = Field(default=None, alias="transformConfig")
    is_enabled: bool = Field(default=True, alias="isEnabled")

    class Config:
        populate_by_name = True


class FieldMappingResponse(BaseModel):
    """Stored field mapping."""
    id: int
    source_field: str
    target_object: str
    target_field: str
    transform_type: str
    transform_config: Optional[Dict[str, Any]] = None
    is_enabled: bool

    class Config:
        from_attributes = True


class FieldMappingsUpdate(BaseModel):
    """Full replacement of an integration's mappings."""
    mappings: List[FieldMappingIn]


class SyncLogResponse(BaseModel):
    """Sync log entry."""
    id: int
    session_id: str
    sync_type: str
    object_type: str
    status: str
    external_id: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SyncResultResponse(BaseModel):
    """Outcome of one provider delivery."""
    success: bool
    external_id: Optional[str] = None
    error: Optional[str] = None
