"""OAuth token lifecycle for CRM integrations."""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Union
import asyncio
import logging
import urllib.parse

import httpx
from sqlalchemy import select

from crm_sync.core.config import PROVIDER_CONFIGS, Settings, get_oauth_client_config, get_settings
from crm_sync.core.database import Database
from crm_sync.integrations.base import OAuthExchangeError, TokenRefreshError
from crm_sync.models import Integration, Provider
from crm_sync.utils.crypto import decrypt_token, encrypt_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenSet:
    """Tokens returned by a provider token endpoint."""
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime
    instance_url: Optional[str] = None


@dataclass(frozen=True)
class Valid:
    """Stored token is usable as is."""
    token: str


@dataclass(frozen=True)
class Refreshed:
    """Token was refreshed and persisted during resolution."""
    token: str


@dataclass(frozen=True)
class Disconnected:
    """No usable token; ``reason`` says why."""
    reason: str


TokenResolution = Union[Valid, Refreshed, Disconnected]


class TokenStore:
    """Persists per-provider OAuth state on the integration row."""

    def __init__(self, database: Database, settings: Optional[Settings] = None):
        self.database = database
        self.settings = settings or get_settings()

    def encrypt(self, value: str) -> str:
        return encrypt_token(value, self.settings.encryption_key, self.settings.token_salt)

    def decrypt(self, value: str) -> str:
        return decrypt_token(value, self.settings.encryption_key, self.settings.token_salt)

    async def get(self, provider: str) -> Optional[Integration]:
        async with self.database.session() as session:
            result = await session.execute(select(Integration).where(Integration.provider == provider))
            return result.scalar_one_or_none()

    async def save_tokens(self, provider: str, tokens: TokenSet) -> Integration:
        """Store a token set and mark the integration connected."""
        async with self.database.session() as session:
            integration = await self._get_for_update(session, provider)
            integration.access_token = self.encrypt(tokens.access_token)
            if tokens.refresh_token:
                integration.refresh_token = self.encrypt(tokens.refresh_token)
            if tokens.instance_url:
                integration.instance_url = tokens.instance_url
            integration.token_expires_at = tokens.expires_at
            integration.is_connected = True
            integration.last_error = None
            await session.commit()
            return integration

    async def clear_tokens(self, provider: str, last_error: Optional[str] = None) -> None:
        """Clear tokens and identifiers, marking the integration disconnected."""
        async with self.database.session() as session:
            integration = await self._get_for_update(session, provider)
            integration.is_connected = False
            integration.access_token = None
            integration.refresh_token = None
            integration.token_expires_at = None
            integration.instance_url = None
            integration.portal_id = None
            if last_error is not None:
                integration.last_error = last_error
            await session.commit()

    async def set_portal_id(self, provider: str, portal_id: str) -> None:
        async with self.database.session() as session:
            integration = await self._get_for_update(session, provider)
            integration.portal_id = portal_id
            await session.commit()

    async def ensure_integrations(self) -> None:
        """Create a row for every known provider, leaving existing rows untouched."""
        async with self.database.session() as session:
            result = await session.execute(select(Integration.provider))
            existing = set(result.scalars().all())
            for provider in Provider:
                if provider.value in existing:
                    continue
                config = PROVIDER_CONFIGS[provider.value]
                session.add(Integration(
                    provider=provider.value,
                    name=config["name"],
                    description=config["description"],
                ))
                logger.info(f"Created integration row for {provider.value}")
            await session.commit()

    async def _get_for_update(self, session, provider: str) -> Integration:
        result = await session.execute(select(Integration).where(Integration.provider == provider))
        integration = result.scalar_one_or_none()
        if integration is None:
            raise LookupError(f"Integration {provider} not initialized")
        return integration


class TokenLifecycleManager:
    """Exchanges, refreshes and revokes provider OAuth tokens.

    A token expiring within ``token_refresh_buffer_seconds`` is refreshed before
    use. A rejected refresh disconnects the integration, so callers never
    receive a token known to be expired.
    """

    def __init__(
        self,
        database: Database,
        http_client: httpx.AsyncClient,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.settings = settings or get_settings()
        self.store = TokenStore(database, self.settings)
        self.http_client = http_client
        self.clock = clock
        self._refresh_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def refresh_buffer(self) -> timedelta:
        return timedelta(seconds=self.settings.token_refresh_buffer_seconds)

    def authorization_url(self, provider: str, state: str) -> str:
        """Build the provider authorize URL."""
        client = get_oauth_client_config(provider, self.settings)
        params = {
            "response_type": "code",
            "client_id": client["client_id"],
            "redirect_uri": client["redirect_uri"],
            "scope": " ".join(client["scopes"]),
            "state": state,
        }
        return f"{client['auth_url']}?{urllib.parse.urlencode(params)}"

    async def exchange_code(self, provider: str, code: str) -> TokenSet:
        """Exchange an authorization code and persist the resulting tokens."""
        client = get_oauth_client_config(provider, self.settings)
        data = {
            "grant_type": "authorization_code",
            "client_id": client["client_id"],
            "client_secret": client["client_secret"],
            "redirect_uri": client["redirect_uri"],
            "code": code,
        }
        name = PROVIDER_CONFIGS[provider]["name"]

        try:
            token_data = await self._post_token_request(client["token_url"], data)
        except httpx.HTTPStatusError as e:
            raise OAuthExchangeError(f"{name} OAuth failed: {e.response.text}") from e
        except httpx.HTTPError as e:
            raise OAuthExchangeError(f"{name} OAuth failed: {e}") from e
        except ValueError as e:
            raise OAuthExchangeError(f"{name} OAuth failed: invalid token response") from e

        try:
            tokens = self._token_set(token_data)
        except (KeyError, TypeError, ValueError) as e:
            raise OAuthExchangeError(f"{name} OAuth failed: malformed token response") from e
        await self.store.save_tokens(provider, tokens)
        logger.info(f"Connected {name}", extra={"provider": provider})
        return tokens

    async def resolve_token(self, provider: str) -> TokenResolution:
        """Resolve a usable access token, refreshing it when close to expiry."""
        integration = await self.store.get(provider)
        unusable = self._unusable_reason(integration)
        if unusable:
            return Disconnected(unusable)

        if not self._needs_refresh(integration):
            return await self._stored_token(provider, integration)

        async with self._refresh_locks[provider]:
            # another caller may have refreshed or disconnected while we waited
            integration = await self.store.get(provider)
            unusable = self._unusable_reason(integration)
            if unusable:
                return Disconnected(unusable)
            if not self._needs_refresh(integration):
                return await self._stored_token(provider, integration)

            try:
                if not integration.refresh_token:
                    raise TokenRefreshError("no refresh token available")
                tokens = await self._refresh(provider, self.store.decrypt(integration.refresh_token))
            except (TokenRefreshError, ValueError) as e:
                reason = f"Token refresh failed: {e}"
                logger.error(f"Failed to refresh {provider} token: {e}", extra={"provider": provider})
                await self.store.clear_tokens(provider, last_error=reason)
                return Disconnected(reason)

            await self.store.save_tokens(provider, tokens)
            logger.info(f"Refreshed {provider} access token", extra={"provider": provider})
            return Refreshed(tokens.access_token)

    async def get_valid_access_token(self, provider: str) -> Optional[str]:
        """Get a valid access token or ``None`` when the provider is not usable."""
        resolution = await self.resolve_token(provider)
        if isinstance(resolution, (Valid, Refreshed)):
            return resolution.token
        return None

    async def get_instance_url(self, provider: str) -> Optional[str]:
        integration = await self.store.get(provider)
        return integration.instance_url if integration else None

    async def disconnect(self, provider: str) -> None:
        """Disconnect a provider; safe to call repeatedly."""
        await self.store.clear_tokens(provider)
        logger.info(f"Disconnected {provider}", extra={"provider": provider})

    async def initialize_integrations(self) -> None:
        await self.store.ensure_integrations()

    async def _refresh(self, provider: str, refresh_token: str) -> TokenSet:
        client = get_oauth_client_config(provider, self.settings)
        data = {
            "grant_type": "refresh_token",
            "client_id": client["client_id"],
            "client_secret": client["client_secret"],
            "refresh_token": refresh_token,
        }
        try:
            token_data = await self._post_token_request(client["token_url"], data)
        except httpx.HTTPStatusError as e:
            raise TokenRefreshError(e.response.text) from e
        except httpx.HTTPError as e:
            raise TokenRefreshError(str(e)) from e
        except ValueError as e:
            raise TokenRefreshError("invalid token response") from e
        try:
            return self._token_set(token_data)
        except (KeyError, TypeError, ValueError) as e:
            raise TokenRefreshError("malformed token response") from e

    async def _post_token_request(self, token_url: str, data: Dict[str, str]) -> Dict:
        response = await self.http_client.post(
            token_url,
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        response.raise_for_status()
        return response.json()

    def _token_set(self, token_data: Dict) -> TokenSet:
        expires_in = token_data.get("expires_in") or self.settings.default_token_lifetime_seconds
        return TokenSet(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            expires_at=self.clock() + timedelta(seconds=int(expires_in)),
            instance_url=token_data.get("instance_url"),
        )

    def _needs_refresh(self, integration: Integration) -> bool:
        if integration.token_expires_at is None:
            return False
        return integration.token_expires_at - self.refresh_buffer <= self.clock()

    @staticmethod
    def _unusable_reason(integration: Optional[Integration]) -> Optional[str]:
        if integration is None:
            return "Integration not initialized"
        if not integration.is_connected or not integration.access_token:
            return "Not connected"
        return None

    async def _stored_token(self, provider: str, integration: Integration) -> TokenResolution:
        try:
            return Valid(self.store.decrypt(integration.access_token))
        except ValueError as e:
            reason = f"Stored token unusable: {e}"
            logger.error(reason, extra={"provider": provider})
            await self.store.clear_tokens(provider, last_error=reason)
            return Disconnected(reason)
