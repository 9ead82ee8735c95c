"""
Health endpoints for the orchestrator.
/health: full report; /health/ready: readiness (fails closed); /health/live: no checks.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from identity_server.dependencies import get_health_monitor
from identity_server.health import HealthMonitor, HealthStatus

router = APIRouter()


def _status_code(status: HealthStatus) -> int:
    return 503 if status is HealthStatus.UNHEALTHY else 200


@router.get("/health")
def health(monitor: HealthMonitor = Depends(get_health_monitor)):
    """All checks with name, status, description, duration (ms) and data."""
    report = monitor.report()
    return JSONResponse(report.to_dict(), status_code=_status_code(report.status))


@router.get("/health/ready")
def health_ready(monitor: HealthMonitor = Depends(get_health_monitor)):
    """Status and timestamp; the individual checks are included when not ready."""
    report = monitor.report()
    not_ready = report.status is HealthStatus.UNHEALTHY
    return JSONResponse(report.to_dict(include_checks=not_ready), status_code=_status_code(report.status))


@router.get("/health/live")
def health_live():
    """Process is up and serving; dependencies are not consulted."""
    return {"status": HealthStatus.HEALTHY.label, "timestamp": datetime.now(timezone.utc).isoformat()}
