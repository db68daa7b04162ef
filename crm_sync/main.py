"""Main FastAPI application."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

import httpx

from crm_sync.core.config import get_settings
from crm_sync.core.database import Database
from crm_sync.api import health, integrations
from crm_sync.services.integration_service import IntegrationService
from crm_sync.services.sync_service import SyncService
from crm_sync.services.token_service import TokenLifecycleManager
from crm_sync.services.transformation_service import FieldMappingEngine
from crm_sync.utils.logging import setup_logging

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)

# Get settings
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting up CRM sync service...")
    logger.info(f"Environment: {settings.environment}")

    database = Database()
    await database.connect()
    http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)

    token_manager = TokenLifecycleManager(database, http_client, settings)
    await token_manager.initialize_integrations()
    mapping_engine = FieldMappingEngine(database)
    sync_service = SyncService(database, token_manager, mapping_engine, http_client)

    app.state.database = database
    app.state.http_client = http_client
    app.state.token_manager = token_manager
    app.state.sync_service = sync_service
    app.state.integration_service = IntegrationService(
        database, token_manager, mapping_engine, sync_service, settings
    )

    yield

    # Shutdown
    logger.info("Shutting down CRM sync service...")
    await http_client.aclose()
    await database.disconnect()


# Create FastAPI app
app = FastAPI(
    title="CRM Sync Service",
    description="Syncs completed training sessions to Salesforce and HubSpot",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(
    integrations.router,
    prefix="/api/v1/crm",
    tags=["crm"]
)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "crm_sync.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
    )
