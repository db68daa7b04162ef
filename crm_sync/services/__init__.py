"""Services for the CRM sync engine."""

from .token_service import TokenLifecycleManager, TokenStore, TokenSet, Valid, Refreshed, Disconnected
from .transformation_service import FieldMappingEngine, parse_transform, apply_transform, validate_mappings
from .sync_service import SyncService, SyncResult, SessionSummarySource
from .integration_service import IntegrationService, IntegrationNotFoundError

__all__ = [
    "TokenLifecycleManager",
    "TokenStore",
    "TokenSet",
    "Valid",
    "Refreshed",
    "Disconnected",
    "FieldMappingEngine",
    "parse_transform",
    "apply_transform",
    "validate_mappings",
    "SyncService",
    "SyncResult",
    "SessionSummarySource",
    "IntegrationService",
    "IntegrationNotFoundError",
]
