"""Base CRM provider class and error taxonomy."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional
import logging

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from crm_sync.models import Provider
from crm_sync.schemas.session import SessionSummary, SyncPayload

if TYPE_CHECKING:
    from crm_sync.services.token_service import TokenLifecycleManager


logger = logging.getLogger(__name__)


class IntegrationError(Exception):
    """Base integration error."""
    pass


class OAuthExchangeError(IntegrationError):
    """Authorization code exchange was rejected by the provider."""
    pass


class TokenRefreshError(IntegrationError):
    """Refresh token was rejected; the integration gets disconnected."""
    pass


class NotConnectedError(IntegrationError):
    """No valid access token is available for the provider."""
    pass


class ProviderApiError(IntegrationError):
    """Provider responded with an error or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, response_text: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text


class MappingTransformError(IntegrationError):
    """A field mapping transform is unknown or its config is malformed."""
    pass


class SyncLogNotFoundError(IntegrationError):
    """Referenced sync log does not exist."""
    pass


class SessionNotFoundError(IntegrationError):
    """Training session summary is not available."""
    pass


@dataclass
class ConnectionTestResult:
    """Outcome of a provider connection test."""
    ok: bool
    detail: Dict[str, Any] = field(default_factory=dict)


OUTCOME_LABELS = {
    "sale_made": "Sale Made",
    "no_sale": "No Sale",
    "abandoned": "Abandoned",
}

MODE_LABELS = {
    "ai_sells": "User as Buyer",
    "user_sells": "User as Seller",
}


def outcome_label(summary: SessionSummary) -> str:
    return OUTCOME_LABELS.get(summary.outcome, summary.outcome or "Unknown")


def mode_label(summary: SessionSummary) -> str:
    return MODE_LABELS.get(summary.sales_mode, summary.sales_mode)


def duration_minutes(summary: SessionSummary) -> int:
    return round(summary.duration / 60)


def format_score(score: float) -> str:
    return f"{score:g}"


class CrmProvider(ABC):
    """Capability shared by every CRM the sync engine can deliver to.

    Each call resolves a valid access token first. Without one the call fails
    with :class:`NotConnectedError` and no request is sent.
    """

    provider: Provider
    display_name: str
    object_type: str
    default_date_format: str = "iso"

    def __init__(self, token_manager: "TokenLifecycleManager", http_client: httpx.AsyncClient):
        self.token_manager = token_manager
        self.http_client = http_client

    @abstractmethod
    async def create_record(self, payload: SyncPayload) -> str:
        """Create the remote record and return its id."""
        pass

    @abstractmethod
    async def update_record(self, external_id: str, payload: SyncPayload) -> None:
        """Update a previously created remote record."""
        pass

    @abstractmethod
    async def find_contact_by_email(self, email: str) -> Optional[str]:
        """Find a contact id by email, ``None`` when there is no match."""
        pass

    @abstractmethod
    async def test_connection(self) -> ConnectionTestResult:
        """Test if the provider connection is valid."""
        pass

    async def lookup_contact(self, email: Optional[str]) -> Optional[str]:
        """Best-effort contact lookup that never fails record creation."""
        if not email:
            return None
        try:
            return await self.find_contact_by_email(email)
        except IntegrationError as e:
            logger.warning(
                f"{self.display_name} contact lookup failed: {e}",
                extra={"provider": self.provider.value},
            )
            return None

    async def get_access_token(self) -> str:
        token = await self.token_manager.get_valid_access_token(self.provider.value)
        if not token:
            raise NotConnectedError(f"{self.display_name} not connected or token invalid")
        return token

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4),
        retry=retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout)),
        reraise=True,
    )
    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        # only connection-phase failures are retried, nothing reached the provider yet
        return await self.http_client.request(method, url, **kwargs)

    async def make_api_request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make an authenticated API request."""
        token = await self.get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

        try:
            response = await self._send(method, url, headers=headers, params=params, json=json)
        except httpx.TimeoutException as e:
            raise ProviderApiError(f"{self.display_name} API request timed out") from e
        except httpx.HTTPError as e:
            raise ProviderApiError(f"{self.display_name} API request failed: {e}") from e

        if response.is_error:
            raise ProviderApiError(
                f"{self.display_name} API error ({response.status_code}): {response.text}",
                status_code=response.status_code,
                response_text=response.text,
            )
        return response
