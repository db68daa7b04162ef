"""Provider registry for CRM client implementations."""

from typing import Dict, Type, Optional
from crm_sync.integrations.base import CrmProvider
from crm_sync.models import Provider


class ProviderRegistry:
    """Registry for CRM provider implementations."""

    _providers: Dict[Provider, Type[CrmProvider]] = {}

    @classmethod
    def register(cls, provider: Provider):
        """Decorator to register a provider class."""
        def decorator(provider_class: Type[CrmProvider]):
            provider_class.provider = provider
            cls._providers[provider] = provider_class
            return provider_class
        return decorator

    @classmethod
    def get(cls, provider: str) -> Optional[Type[CrmProvider]]:
        """Get provider class by code."""
        try:
            return cls._providers.get(Provider(provider))
        except ValueError:
            return None

    @classmethod
    def list_providers(cls) -> list[Provider]:
        """List all registered providers."""
        return list(cls._providers.keys())
