"""Health check endpoints."""

from fastapi import APIRouter, Depends
from datetime import datetime

from crm_sync.api.dependencies import get_database
from crm_sync.core.config import get_settings
from crm_sync.core.database import Database

router = APIRouter()
settings = get_settings()


@router.get("/health")
async def health_check():
    """Basic health check."""
    return {
        "status": "healthy",
        "service": settings.service_name,
        "environment": settings.environment,
        "timestamp": datetime.utcnow().isoformat(),
    }


@router.get("/health/detailed")
async def detailed_health_check(database: Database = Depends(get_database)):
    """Detailed health check with database connectivity."""
    health_status = {
        "status": "healthy",
        "service": settings.service_name,
        "environment": settings.environment,
        "timestamp": datetime.utcnow().isoformat(),
        "checks": {
            "database": {"status": "unknown"},
        }
    }

    try:
        if await database.ping():
            health_status["checks"]["database"]["status"] = "healthy"
        else:
            health_status["checks"]["database"]["status"] = "disconnected"
            health_status["status"] = "degraded"
    except Exception as e:
        health_status["checks"]["database"]["status"] = "unhealthy"
        health_status["checks"]["database"]["error"] = str(e)
        health_status["status"] = "unhealthy"

    return health_status
