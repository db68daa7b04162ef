"""Pytest configuration and fixtures for CRM sync tests."""

import os
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("SALESFORCE_CLIENT_ID", "sf-client")
os.environ.setdefault("SALESFORCE_CLIENT_SECRET", "sf-secret")
os.environ.setdefault("SALESFORCE_REDIRECT_URI", "http://testserver/api/v1/crm/salesforce/callback")
os.environ.setdefault("HUBSPOT_CLIENT_ID", "hs-client")
os.environ.setdefault("HUBSPOT_CLIENT_SECRET", "hs-secret")
os.environ.setdefault("HUBSPOT_REDIRECT_URI", "http://testserver/api/v1/crm/hubspot/callback")

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select

from crm_sync.core.config import get_settings
from crm_sync.core.database import Database
from crm_sync.models import Integration
from crm_sync.schemas.session import SessionSummary
from crm_sync.services.integration_service import IntegrationService
from crm_sync.services.sync_service import SyncService
from crm_sync.services.token_service import TokenLifecycleManager, TokenSet
from crm_sync.services.transformation_service import FieldMappingEngine


NOW = datetime(2024, 5, 1, 12, 0, 0)
SALESFORCE_INSTANCE = "https://acme.my.salesforce.com"
SF_API = "/services/data/v59.0"


class FakeClock:
    """Settable clock injected in place of ``datetime.utcnow``."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


Handler = Callable[[httpx.Request], httpx.Response]


class MockCrm:
    """In-memory stand-in for the Salesforce, HubSpot and OAuth endpoints."""

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Union[Handler, Tuple[int, Any]]] = {}
        self.requests: List[httpx.Request] = []

    def route(self, method: str, path: str, status: int = 200, json: Any = None,
              handler: Optional[Handler] = None) -> None:
        self.routes[(method, path)] = handler or (status, json)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": f"no route for {request.method} {request.url.path}"})
        if callable(route):
            return route(request)
        status, body = route
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def crm():
    mock = MockCrm()
    mock.route("GET", f"{SF_API}/query", json={"totalSize": 0, "done": True, "records": []})
    mock.route("POST", f"{SF_API}/sobjects/Task", json={"id": "T1", "success": True, "errors": []})
    mock.route("PATCH", f"{SF_API}/sobjects/Task/T1", status=204)
    mock.route("GET", "/services/oauth2/userinfo", json={
        "user_id": "005xx", "organization_id": "00Dxx", "preferred_username": "admin@acme.com",
    })
    mock.route("POST", "/crm/v3/objects/contacts/search", json={"total": 0, "results": []})
    mock.route("POST", "/engagements/v1/engagements", json={"engagement": {"id": 555}})
    mock.route("PATCH", "/engagements/v1/engagements/555", status=204)
    mock.route("GET", "/account-info/v3/details", json={"portalId": 12345, "timeZone": "US/Eastern"})
    return mock


@pytest_asyncio.fixture
async def http_client(crm):
    async with httpx.AsyncClient(transport=httpx.MockTransport(crm.handler)) as client:
        yield client


@pytest_asyncio.fixture
async def database(tmp_path):
    """Fresh SQLite database per test, one connection per session."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'crm_sync.db'}")
    await db.connect()
    yield db
    await db.disconnect()


@pytest_asyncio.fixture
async def token_manager(database, http_client, settings, clock):
    manager = TokenLifecycleManager(database, http_client, settings, clock=clock)
    await manager.initialize_integrations()
    return manager


@pytest.fixture
def mapping_engine(database):
    return FieldMappingEngine(database)


@pytest.fixture
def sync_service(database, token_manager, mapping_engine, http_client, clock):
    return SyncService(database, token_manager, mapping_engine, http_client, clock=clock)


@pytest.fixture
def integration_service(database, token_manager, mapping_engine, sync_service, settings):
    return IntegrationService(database, token_manager, mapping_engine, sync_service, settings)


@pytest.fixture
def connect_integration(database, token_manager, clock):
    """Store tokens for a provider and optionally enable it."""

    async def connect(
        provider: str,
        enabled: bool = True,
        expires_in: timedelta = timedelta(hours=1),
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = "refresh-token",
    ) -> Integration:
        await token_manager.store.save_tokens(provider, TokenSet(
            access_token=access_token or f"{provider}-access",
            refresh_token=refresh_token,
            expires_at=clock() + expires_in,
            instance_url=SALESFORCE_INSTANCE if provider == "salesforce" else None,
        ))
        return await set_enabled(database, provider, enabled)

    return connect


async def set_enabled(database: Database, provider: str, enabled: bool) -> Integration:
    async with database.session() as session:
        result = await session.execute(select(Integration).where(Integration.provider == provider))
        integration = result.scalar_one()
        integration.is_enabled = enabled
        await session.commit()
        return integration


@pytest.fixture
def summary():
    return SessionSummary(
        session_id="s1",
        user_name="Jamie Rivera",
        user_email="jamie@example.com",
        outcome="sale_made",
        score=92,
        grade="A",
        sales_mode="user_sells",
        duration=610,
        message_count=24,
        started_at=datetime(2024, 5, 1, 11, 40, 0),
        ended_at=datetime(2024, 5, 1, 11, 50, 10),
    )
