# /leadflow/routes/public.py

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from datetime import datetime, timezone

from leadflow.config.settings import settings
from leadflow.utils.dependencies import verify_metrics_access
from leadflow.services.db_service import db_service
from leadflow.services.cache_service import cache_service

# Health checks and the Prometheus endpoint. /metrics is protected by an API
# key when one is configured.

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Leadflow WhatsApp Bot",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc)}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check():
    """Readiness probe: MongoDB and Redis must both answer."""
    services = {
        "database": await db_service.health_check(),
        "cache": await cache_service.health_check(),
    }
    if not all(services.values()):
        failed = [name for name, ok in services.items() if not ok]
        raise HTTPException(status_code=503, detail=f"Service not ready: {', '.join(failed)}")
    return {"status": "ready"}


@router.get("/health/live", summary="Liveness Probe")
async def liveness_check():
    return {"status": "alive"}


@router.get("/metrics", tags=["Monitoring"])
async def metrics(request: Request, _: bool = Depends(verify_metrics_access)):
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)
