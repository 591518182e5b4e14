"""Health check endpoints for Kubernetes and monitoring."""

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from devenv_api.core.broker import QueueBroker, get_queue_broker
from devenv_api.core.config import Settings, get_settings
from devenv_api.services.provision_log import ProvisionLogBuffer, get_provision_log_buffer

SettingsDep = Annotated[Settings, Depends(get_settings)]
QueueBrokerDep = Annotated[QueueBroker, Depends(get_queue_broker)]
LogBufferDep = Annotated[ProvisionLogBuffer, Depends(get_provision_log_buffer)]

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    version: str
    environment: str


class ReadinessResponse(BaseModel):
    """Readiness check response with component status."""

    status: str
    timestamp: datetime
    checks: dict[str, Any]


@router.get("/health", response_model=HealthResponse)
async def health_check(settings: SettingsDep) -> HealthResponse:
    """Basic health check for liveness checks.

    Returns minimal information to confirm the service is running.
    """
    return HealthResponse(
        status="healthy",
        timestamp=datetime.utcnow(),
        version="0.1.0",
        environment=settings.environment,
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(
    settings: SettingsDep,
    broker: QueueBrokerDep,
    log_buffer: LogBufferDep,
) -> ReadinessResponse:
    """Readiness check for Kubernetes readiness gating.

    Verifies the data directory and the job queue backend. The log buffer is
    reported but never makes the service unready; progress logging is
    best-effort.
    """
    checks: dict[str, Any] = {}

    if settings.store_backend == "json":
        metadata_dir = settings.data_dir / "metadata"
        checks["metadata_directory"] = {
            "status": "ok" if metadata_dir.exists() else "error",
            "path": str(metadata_dir),
        }

    checks["job_queue"] = {
        "status": "ok" if broker.ping() else "error",
        "backend": settings.queue_backend,
    }

    buffer_ok = log_buffer.ping()
    checks["log_buffer"] = {
        "status": "ok" if buffer_ok else "degraded",
        "backend": settings.log_buffer_backend,
    }

    # Overall status
    all_ok = all(
        check.get("status") != "error" for check in checks.values() if isinstance(check, dict)
    )

    return ReadinessResponse(
        status="ready" if all_ok else "not_ready",
        timestamp=datetime.utcnow(),
        checks=checks,
    )


@router.get("/startup")
async def startup_check() -> dict[str, str]:
    """Startup check for Kubernetes startup gating.

    Simple endpoint that returns once the application has started.
    """
    return {"status": "started"}
