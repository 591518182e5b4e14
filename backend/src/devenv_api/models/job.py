"""Job models for the provision and control queues."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from devenv_api.models.common import JobOperation


class JobStatus(str, Enum):
    """Status of a queued job."""

    WAITING = "waiting"  # Ready to be reserved
    DELAYED = "delayed"  # Waiting for its backoff to elapse
    ACTIVE = "active"  # Reserved by a worker
    COMPLETED = "completed"
    FAILED = "failed"  # Attempts exhausted


OUTSTANDING_JOB_STATUSES = frozenset(
    {JobStatus.WAITING, JobStatus.DELAYED, JobStatus.ACTIVE}
)


class RetryPolicy(BaseModel):
    """Retry and retention policy applied to every job of a queue.

    Backoff is exponential: the n-th retry waits ``backoff_seconds * 2**(n-1)``.
    """

    max_attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=5.0, ge=0)
    keep_completed: int = Field(default=100, ge=0)
    keep_failed: int = Field(default=100, ge=0)

    def backoff_for(self, attempts_made: int) -> float:
        """Delay before the next attempt after ``attempts_made`` failures."""
        return self.backoff_seconds * (2 ** max(attempts_made - 1, 0))


def job_key(operation: JobOperation, environment_id: str) -> str:
    """Deterministic job id, e.g. ``provision-<environment id>``."""
    return f"{operation.value}-{environment_id}"


class ProvisionJobData(BaseModel):
    """Payload of a provision job."""

    environment_id: str = Field(alias="environmentId")
    user_id: str = Field(alias="userId")
    vcpus: int
    memory_mb: int = Field(alias="memoryMb")
    disk_gb: int = Field(alias="diskGb")
    repository_url: str | None = Field(default=None, alias="repositoryUrl")
    init_script: str | None = Field(default=None, alias="initScript")
    environment_vars: dict[str, str] | None = Field(default=None, alias="environmentVars")

    class Config:
        populate_by_name = True


class ControlJobData(BaseModel):
    """Payload of a start, stop or destroy job."""

    environment_id: str = Field(alias="environmentId")

    class Config:
        populate_by_name = True


class Job(BaseModel):
    """A unit of asynchronous work held by a queue.

    Attributes:
        id: Deterministic key identifying the job within its queue
        name: Operation name (provision, start, stop, destroy)
        queue: Name of the owning queue
        data: JSON payload passed to the worker
        status: Current job status
        attempts_made: Number of times the job has been reserved
        max_attempts: Attempts allowed before the job fails for good
        run_at: Unix time after which a delayed job becomes ready
        lease_until: Unix time after which an active job counts as stalled
        stalled_count: Number of times the job was recovered from a lost worker
        last_error: Message of the most recent failure
        result: Value returned by the worker on completion
    """

    id: str
    name: str
    queue: str
    data: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.WAITING
    attempts_made: int = Field(default=0, alias="attemptsMade")
    max_attempts: int = Field(default=1, alias="maxAttempts")
    run_at: float | None = Field(default=None, alias="runAt")
    lease_until: float | None = Field(default=None, alias="leaseUntil")
    stalled_count: int = Field(default=0, alias="stalledCount")
    last_error: str | None = Field(default=None, alias="lastError")
    result: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow, alias="createdAt")
    finished_at: datetime | None = Field(default=None, alias="finishedAt")

    class Config:
        populate_by_name = True

    @property
    def is_outstanding(self) -> bool:
        """Whether the job still occupies its key."""
        return self.status in OUTSTANDING_JOB_STATUSES

    @property
    def attempts_remaining(self) -> int:
        """Attempts left before the job fails for good."""
        return max(self.max_attempts - self.attempts_made, 0)


class JobOutcome(str, Enum):
    """Result of reporting a job failure to its queue."""

    RETRY_SCHEDULED = "retry_scheduled"
    EXHAUSTED = "exhausted"
