"""Environment routes for requesting and controlling development environments."""

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from devenv_api.core.deps import AdminUser, CurrentUser, CurrentUserSSE, WorkerUser
from devenv_api.models.common import EnvironmentState
from devenv_api.models.environment import AccessDetails, EnvironmentCreate
from devenv_api.models.log import LogEntry, is_progress_complete
from devenv_api.services.environment import (
    EnvironmentAccessDeniedError,
    EnvironmentNotFoundError,
    EnvironmentValidationError,
    InvalidStateTransitionError,
)
from devenv_api.services.orchestrator import (
    EnvironmentOrchestrator,
    FleetStats,
    get_orchestrator,
)
from devenv_api.services.quota import QuotaExceededError

logger = logging.getLogger(__name__)

OrchestratorDep = Annotated[EnvironmentOrchestrator, Depends(get_orchestrator)]

router = APIRouter(prefix="/api/v1/environments", tags=["environments"])

# Seconds between buffer reads while streaming progress
STREAM_POLL_INTERVAL = 1.0


# -----------------------------------------------------------------------------
# Request/Response Models
# -----------------------------------------------------------------------------


class EnvironmentResponse(BaseModel):
    """Response wrapper for environment operations."""

    environment: dict[str, Any]


class EnvironmentsListResponse(BaseModel):
    """Response for list environments operation."""

    environments: list[dict[str, Any]]
    total: int


class FleetResponse(BaseModel):
    """Every environment with fleet totals, for operators."""

    environments: list[dict[str, Any]]
    total: int
    stats: dict[str, Any]


class TransitionRequest(BaseModel):
    """Request body for reporting a state transition."""

    state: EnvironmentState
    metadata: dict[str, Any] | None = None


class JobAcceptedResponse(BaseModel):
    """Response for operations that queue a job."""

    accepted: bool = True
    job_id: str = Field(alias="jobId")

    class Config:
        populate_by_name = True


class ProvisionLogsResponse(BaseModel):
    """Current contents of the progress feed."""

    logs: list[LogEntry]
    complete: bool


def _fleet_stats(stats: FleetStats) -> dict[str, Any]:
    return {
        "total": stats.total,
        "byState": stats.by_state,
        "totalVcpus": stats.total_vcpus,
        "totalMemoryMb": stats.total_memory_mb,
        "runningVcpus": stats.running_vcpus,
        "runningMemoryMb": stats.running_memory_mb,
    }


def unsent_from(logs: list[LogEntry], last: LogEntry | None, sent: int) -> int:
    """Index of the first entry a stream has not sent yet.

    ``last`` is the final entry of the previous read and ``sent`` that read's
    length. Trimming at the cap shifts entries left, so ``last`` is searched
    backwards from its old position. If it is gone the feed was cleared and
    everything is new.
    """
    if last is None:
        return 0
    for index in range(min(sent, len(logs)) - 1, -1, -1):
        if logs[index] == last:
            return index + 1
    return 0


def _not_found(env_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Environment not found: {env_id}",
    )


# -----------------------------------------------------------------------------
# CRUD Endpoints
# -----------------------------------------------------------------------------


@router.get("", response_model=EnvironmentsListResponse)
async def list_environments(
    current_user: CurrentUser,
    orchestrator: OrchestratorDep,
) -> EnvironmentsListResponse:
    """List the caller's environments, newest first."""
    environments = orchestrator.list_environments(current_user.id)
    return EnvironmentsListResponse(
        environments=[env.to_public() for env in environments],
        total=len(environments),
    )


@router.get("/admin/all", response_model=FleetResponse)
async def list_all_environments(
    admin: AdminUser,
    orchestrator: OrchestratorDep,
) -> FleetResponse:
    """List every environment with fleet totals (admin only)."""
    try:
        environments, stats = orchestrator.list_all_environments(admin)
    except EnvironmentAccessDeniedError as e:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(e),
        ) from e

    return FleetResponse(
        environments=[env.to_public() for env in environments],
        total=len(environments),
        stats=_fleet_stats(stats),
    )


@router.post("", response_model=EnvironmentResponse, status_code=status.HTTP_201_CREATED)
async def create_environment(
    request: EnvironmentCreate,
    current_user: CurrentUser,
    orchestrator: OrchestratorDep,
) -> EnvironmentResponse:
    """Request a new environment.

    The record is returned in ``pending`` state; provisioning continues in
    the background. Poll ``GET /{id}`` or the log feed to follow progress.
    """
    try:
        environment = await run_in_threadpool(
            orchestrator.create_environment, request, current_user
        )
    except QuotaExceededError as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(e),
        ) from e
    except EnvironmentValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e

    return EnvironmentResponse(environment=environment.to_public())


@router.get("/{env_id}", response_model=EnvironmentResponse)
async def get_environment(
    env_id: str,
    current_user: CurrentUser,
    orchestrator: OrchestratorDep,
) -> EnvironmentResponse:
    """Get an environment by ID.

    Environments owned by someone else are reported as not found.
    """
    try:
        environment = orchestrator.get_owned_environment(env_id, current_user)
    except EnvironmentNotFoundError as e:
        raise _not_found(env_id) from e

    return EnvironmentResponse(environment=environment.to_public())


@router.patch("/{env_id}", response_model=EnvironmentResponse)
async def transition_environment(
    env_id: str,
    request: TransitionRequest,
    worker: WorkerUser,
    orchestrator: OrchestratorDep,
) -> EnvironmentResponse:
    """Apply a state transition reported by a worker.

    Restricted to worker and admin callers. Transitions outside the state
    machine are rejected with 409 and leave the record unchanged.
    """
    try:
        environment = orchestrator.transition_state(env_id, request.state, request.metadata)
    except EnvironmentNotFoundError as e:
        raise _not_found(env_id) from e
    except InvalidStateTransitionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e

    logger.info(f"{worker.role.value} {worker.id} moved {env_id} to {request.state.value}")
    return EnvironmentResponse(environment=environment.to_public())


@router.delete("/{env_id}", response_model=JobAcceptedResponse)
async def destroy_environment(
    env_id: str,
    current_user: CurrentUser,
    orchestrator: OrchestratorDep,
) -> JobAcceptedResponse:
    """Queue destruction of an environment.

    Returns as soon as the destroy job is accepted; destruction itself is
    asynchronous. Repeated requests return the same outstanding job.
    """
    try:
        job = await run_in_threadpool(orchestrator.destroy_environment, env_id, current_user)
    except EnvironmentNotFoundError as e:
        raise _not_found(env_id) from e
    except InvalidStateTransitionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e

    return JobAcceptedResponse(jobId=job.id)


# -----------------------------------------------------------------------------
# Lifecycle Endpoints
# -----------------------------------------------------------------------------


@router.post(
    "/{env_id}/start",
    response_model=JobAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_environment(
    env_id: str,
    current_user: CurrentUser,
    orchestrator: OrchestratorDep,
) -> JobAcceptedResponse:
    """Queue a start of a stopped environment."""
    try:
        job = await run_in_threadpool(orchestrator.start_environment, env_id, current_user)
    except EnvironmentNotFoundError as e:
        raise _not_found(env_id) from e
    except InvalidStateTransitionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e

    return JobAcceptedResponse(jobId=job.id)


@router.post(
    "/{env_id}/stop",
    response_model=JobAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def stop_environment(
    env_id: str,
    current_user: CurrentUser,
    orchestrator: OrchestratorDep,
) -> JobAcceptedResponse:
    """Queue a stop of a running environment."""
    try:
        job = await run_in_threadpool(orchestrator.stop_environment, env_id, current_user)
    except EnvironmentNotFoundError as e:
        raise _not_found(env_id) from e
    except InvalidStateTransitionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e

    return JobAcceptedResponse(jobId=job.id)


@router.get("/{env_id}/access", response_model=AccessDetails)
async def get_access_details(
    env_id: str,
    current_user: CurrentUser,
    orchestrator: OrchestratorDep,
) -> AccessDetails:
    """Connection details and access token for the environment's owner."""
    try:
        return orchestrator.get_access_details(env_id, current_user)
    except EnvironmentNotFoundError as e:
        raise _not_found(env_id) from e


# -----------------------------------------------------------------------------
# Progress Endpoints
# -----------------------------------------------------------------------------


@router.get("/{env_id}/logs", response_model=ProvisionLogsResponse)
async def get_provision_logs(
    env_id: str,
    current_user: CurrentUser,
    orchestrator: OrchestratorDep,
) -> ProvisionLogsResponse:
    """Current provisioning progress.

    Intended to be polled about once a second. ``complete`` turns true once a
    success line reports completion or any error line appears.
    """
    try:
        logs, complete = orchestrator.get_provision_logs(env_id, current_user)
    except EnvironmentNotFoundError as e:
        raise _not_found(env_id) from e

    return ProvisionLogsResponse(logs=logs, complete=complete)


@router.get("/{env_id}/logs/stream")
async def stream_provision_logs(
    env_id: str,
    current_user: CurrentUserSSE,
    orchestrator: OrchestratorDep,
) -> EventSourceResponse:
    """Stream provisioning progress via Server-Sent Events.

    The stream sends every buffered entry as a "log" event, then new entries
    as they are appended, and ends with a "complete" event once progress is
    complete.

    Event format:
    ```
    event: log
    data: {"timestamp": "...", "message": "Creating VM...", "level": "info"}

    event: complete
    data: {"state": "running"}
    ```
    """
    try:
        orchestrator.get_owned_environment(env_id, current_user)
    except EnvironmentNotFoundError as e:
        raise _not_found(env_id) from e

    async def event_generator() -> AsyncGenerator[dict[str, str], None]:
        last: LogEntry | None = None
        sent = 0

        while True:
            logs, _ = orchestrator.get_provision_logs(env_id, current_user)
            start = unsent_from(logs, last, sent)
            for entry in logs[start:]:
                yield {"event": "log", "data": entry.model_dump_json()}
            if logs:
                last = logs[-1]
            sent = len(logs)

            if is_progress_complete(logs):
                environment = orchestrator.get_environment(env_id)
                yield {
                    "event": "complete",
                    "data": json.dumps({"state": environment.state.value}),
                }
                return

            await asyncio.sleep(STREAM_POLL_INTERVAL)

    return EventSourceResponse(event_generator())
