"""
Health and metrics endpoints.

Lightweight endpoints for operational monitoring without exposing secrets.
"""
from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse

from tilespace.core.database import check_connection
from tilespace.core.metrics import METRICS


router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: database reachable."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "unavailable", "db": False})
    return {"status": "ok", "db": True}


@router.get("/metrics")
def metrics_endpoint():
    payload = METRICS.export_prometheus()
    return Response(content=payload, media_type="text/plain")
