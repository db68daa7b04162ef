"""CRM provider implementations."""

from .base import (
    ConnectionTestResult,
    CrmProvider,
    IntegrationError,
    MappingTransformError,
    NotConnectedError,
    OAuthExchangeError,
    ProviderApiError,
    SessionNotFoundError,
    SyncLogNotFoundError,
    TokenRefreshError,
)
from .registry import ProviderRegistry
from .hubspot import HubSpotProvider
from .salesforce import SalesforceProvider

__all__ = [
    "ConnectionTestResult",
    "CrmProvider",
    "IntegrationError",
    "MappingTransformError",
    "NotConnectedError",
    "OAuthExchangeError",
    "ProviderApiError",
    "SessionNotFoundError",
    "SyncLogNotFoundError",
    "TokenRefreshError",
    "ProviderRegistry",
    "HubSpotProvider",
    "SalesforceProvider",
]
