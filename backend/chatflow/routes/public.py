# /chatflow/routes/public.py

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest
from datetime import datetime, timezone

from chatflow.config.settings import settings
from chatflow.utils.dependencies import verify_metrics_access
from chatflow.services.db_service import db_service

# Unauthenticated endpoints: service banner and probes. /metrics is protected
# by the API key when one is configured.

router = APIRouter()

SERVICE_NAME = "Chatflow Engine"
SERVICE_VERSION = "1.0.0"


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "operational",
        "environment": settings.environment
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc)}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check():
    """Readiness probe: the flow store must be reachable."""
    if not await db_service.health_check():
        raise HTTPException(status_code=503, detail="Service not ready: database unreachable")
    return {"status": "ready"}


@router.get("/health/live", summary="Liveness Probe")
async def liveness_check():
    return {"status": "alive"}


@router.get("/metrics", tags=["Monitoring"])
async def metrics(request: Request, _: bool = Depends(verify_metrics_access)):
    """Secured Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type="text/plain")
