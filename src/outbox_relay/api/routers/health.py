"""
Health Check Endpoints

Health, readiness, and liveness endpoints for container orchestration.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
import os

from fastapi import APIRouter, Depends, Response

from ...core.database.adapter import DatabaseAdapter
from ...core.scheduler.scheduler import Scheduler
from ..dependencies import get_db, get_scheduler

router = APIRouter(tags=["health"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """
    Basic health check.

    Returns 200 if the service is running.
    """
    return {
        "status": "healthy",
        "timestamp": _now(),
        "version": os.getenv("APP_VERSION", "0.1.0"),
    }


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """Liveness probe. Returns 200 while the process is alive."""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(
    response: Response,
    db: DatabaseAdapter = Depends(get_db),
    scheduler: Optional[Scheduler] = Depends(get_scheduler),
) -> Dict[str, Any]:
    """
    Readiness probe.

    Checks database connectivity and, inside the worker, that the job
    scheduler is running. Returns 503 if any check fails.
    """
    checks = {}
    all_healthy = True

    try:
        await db.fetchval("SELECT 1")
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {str(e)[:100]}"
        all_healthy = False

    if scheduler is not None:
        if scheduler.is_running:
            checks["scheduler"] = "running"
        else:
            checks["scheduler"] = "not running"
            all_healthy = False

    if not all_healthy:
        response.status_code = 503

    return {
        "status": "ready" if all_healthy else "not_ready",
        "checks": checks,
        "timestamp": _now(),
    }
