"""
Health check endpoints for service monitoring.

Provides /healthz for load balancers plus a token subsystem view with
refresh metrics and background scheduler statistics.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, status

from ..config import Settings, get_settings
from ..db import ping
from ..utils.logging import get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.get(
    "/healthz",
    response_model=Dict[str, str],
    status_code=status.HTTP_200_OK,
    summary="Health check",
    description="Returns service health status and version information",
)
async def health_check(
    settings: Settings = Depends(get_settings),  # noqa: B008
) -> Dict[str, str]:
    """
    Example response:
        {"status": "ok", "version": "0.1.0", "environment": "development"}
    """
    logger.debug("Health check requested")

    return {
        "status": "ok",
        "version": settings.app_version,
        "environment": settings.app_env,
    }


@router.get(
    "/healthz/live",
    response_model=Dict[str, str],
    status_code=status.HTTP_200_OK,
    summary="Liveness probe",
    include_in_schema=False,
)
async def liveness_probe() -> Dict[str, str]:
    """Returns 200 if the process is alive, regardless of dependencies."""
    return {"status": "alive"}


@router.get(
    "/healthz/ready",
    status_code=status.HTTP_200_OK,
    summary="Readiness probe",
    include_in_schema=False,
)
async def readiness_probe() -> Dict[str, Any]:
    """Ready when the database answers."""
    try:
        latency_ms = await ping()
        return {"ready": True, "database_latency_ms": round(latency_ms, 2)}
    except Exception as e:
        logger.warning("Readiness check failed", error=str(e))
        return {"ready": False, "error": str(e)}


@router.get(
    "/healthz/tokens",
    response_model=Dict[str, Any],
    status_code=status.HTTP_200_OK,
    summary="Token lifecycle health",
    description="Refresh metrics and background refresh scheduler statistics",
)
async def token_health(request: Request) -> Dict[str, Any]:
    """
    Example response:
        {
            "status": "healthy",
            "refresh_metrics": {
                "refresh_attempts_total": 12,
                "refresh_success_total": 11,
                "success_rate": 0.917,
                "avg_latency_ms": 210.3,
                "failures_by_reason": {"transient": 1},
                "deduplicated_refreshes": 2
            },
            "scheduler": {"is_running": true, "sweeps_completed": 4, ...},
            "last_updated": "2025-01-20T15:30:45.123456+00:00"
        }
    """
    manager = getattr(request.app.state, "token_manager", None)
    scheduler = getattr(request.app.state, "token_refresh_scheduler", None)

    if manager is None:
        return {
            "status": "unavailable",
            "refresh_metrics": {},
            "scheduler": None,
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }

    refresh_metrics = manager.refresh_metrics.get_metrics_summary()
    scheduler_stats = scheduler.get_service_stats() if scheduler else None

    health_status = "healthy"
    if scheduler_stats is not None and not scheduler_stats["is_running"]:
        health_status = "stopped"
    elif (
        refresh_metrics["refresh_attempts_total"] > 0
        and refresh_metrics["success_rate"] < 0.8
    ):
        health_status = "degraded"

    return {
        "status": health_status,
        "refresh_metrics": refresh_metrics,
        "scheduler": scheduler_stats,
        "last_updated": datetime.now(timezone.utc).isoformat(),
    }
