"""Admin operations on CRM integrations."""

from typing import List, Optional, Sequence
import logging

from sqlalchemy import select

from crm_sync.core.config import Settings, get_settings, is_provider_configured
from crm_sync.core.database import Database
from crm_sync.integrations.base import ConnectionTestResult, IntegrationError
from crm_sync.integrations.hubspot import HubSpotProvider
from crm_sync.models import FieldMapping, Integration, Provider
from crm_sync.schemas.integration import FieldMappingIn, IntegrationOverview, IntegrationResponse
from crm_sync.services.sync_service import SyncService
from crm_sync.services.token_service import TokenLifecycleManager
from crm_sync.services.transformation_service import FieldMappingEngine
from crm_sync.utils.crypto import create_state_token, verify_state_token

logger = logging.getLogger(__name__)


class IntegrationNotFoundError(LookupError):
    """Unknown provider code."""
    pass


class IntegrationService:
    """Service for managing CRM integrations from the admin surface."""

    def __init__(
        self,
        database: Database,
        token_manager: TokenLifecycleManager,
        mapping_engine: FieldMappingEngine,
        sync_service: SyncService,
        settings: Optional[Settings] = None,
    ):
        self.database = database
        self.token_manager = token_manager
        self.mapping_engine = mapping_engine
        self.sync_service = sync_service
        self.settings = settings or get_settings()

    async def get_integration(self, provider: str) -> Integration:
        """Get integration by provider code."""
        self._check_provider(provider)
        integration = await self.token_manager.store.get(provider)
        if integration is None:
            raise IntegrationNotFoundError(f"Integration {provider} not initialized")
        return integration

    async def list_integrations(self) -> List[IntegrationOverview]:
        """All integrations with their configuration state and sync stats."""
        async with self.database.session() as session:
            result = await session.execute(select(Integration).order_by(Integration.id))
            integrations = list(result.scalars().all())

        overviews = []
        for integration in integrations:
            overviews.append(IntegrationOverview(
                integration=IntegrationResponse.model_validate(integration),
                configured=is_provider_configured(integration.provider, self.settings),
                stats=await self.sync_service.get_sync_stats(integration.provider),
            ))
        return overviews

    def build_connect_url(self, provider: str, user_id: Optional[str] = None) -> str:
        """Authorize URL carrying a signed, expiring state token.

        Raises:
            ValueError: the provider has no OAuth client credentials.
        """
        self._check_provider(provider)
        if not is_provider_configured(provider, self.settings):
            raise ValueError(f"{provider} OAuth is not configured")

        state = create_state_token(
            provider,
            self.settings.secret_key,
            ttl_seconds=self.settings.oauth_state_ttl_seconds,
            extra={"sub": user_id} if user_id else None,
        )
        return self.token_manager.authorization_url(provider, state)

    async def complete_oauth(self, provider: str, code: str, state: str) -> Integration:
        """Verify the state, exchange the code and record provider identifiers.

        Raises:
            OAuthStateError: state is invalid, expired or for another provider.
            OAuthExchangeError: the provider rejected the code.
        """
        self._check_provider(provider)
        verify_state_token(state, provider, self.settings.secret_key)
        await self.token_manager.exchange_code(provider, code)

        if provider == Provider.HUBSPOT.value:
            client = self.sync_service.get_provider(provider)
            if isinstance(client, HubSpotProvider):
                try:
                    portal_id = await client.get_portal_id()
                except IntegrationError as e:
                    logger.warning(f"Could not fetch HubSpot portal id: {e}", extra={"provider": provider})
                else:
                    if portal_id:
                        await self.token_manager.store.set_portal_id(provider, portal_id)

        return await self.get_integration(provider)

    async def toggle(self, provider: str, enabled: bool) -> Integration:
        """Enable or disable an integration."""
        self._check_provider(provider)
        async with self.database.session() as session:
            result = await session.execute(select(Integration).where(Integration.provider == provider))
            integration = result.scalar_one_or_none()
            if integration is None:
                raise IntegrationNotFoundError(f"Integration {provider} not initialized")
            integration.is_enabled = enabled
            await session.commit()

        logger.info(f"{'Enabled' if enabled else 'Disabled'} {provider}", extra={"provider": provider})
        return integration

    async def test_connection(self, provider: str) -> ConnectionTestResult:
        """Test a provider connection, reporting failures in the result."""
        self._check_provider(provider)
        client = self.sync_service.get_provider(provider)
        if client is None:
            return ConnectionTestResult(ok=False, detail={"error": f"No client registered for {provider}"})
        try:
            return await client.test_connection()
        except IntegrationError as e:
            logger.warning(f"Connection test failed: {e}", extra={"provider": provider})
            return ConnectionTestResult(ok=False, detail={"error": str(e)})

    async def disconnect(self, provider: str) -> Integration:
        self._check_provider(provider)
        await self.token_manager.disconnect(provider)
        return await self.get_integration(provider)

    async def get_mappings(self, provider: str) -> List[FieldMapping]:
        self._check_provider(provider)
        return await self.mapping_engine.get_mappings(provider)

    async def save_mappings(self, provider: str, mappings: Sequence[FieldMappingIn]) -> List[FieldMapping]:
        """Replace all mappings; raises ``MappingTransformError`` on invalid input."""
        self._check_provider(provider)
        return await self.mapping_engine.replace_mappings(provider, mappings)

    @staticmethod
    def _check_provider(provider: str) -> None:
        try:
            Provider(provider)
        except ValueError:
            raise IntegrationNotFoundError(f"Unknown CRM provider: {provider}") from None