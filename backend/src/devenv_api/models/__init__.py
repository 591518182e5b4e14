"""Pydantic models for environments, jobs and provisioning logs."""

from devenv_api.models.common import (
    EnvironmentState,
    JobOperation,
    LogLevel,
    PlanTier,
    UserRole,
)
from devenv_api.models.environment import (
    AccessDetails,
    Environment,
    EnvironmentCreate,
    ResourceSpec,
)
from devenv_api.models.job import (
    ControlJobData,
    Job,
    JobOutcome,
    JobStatus,
    ProvisionJobData,
    RetryPolicy,
    job_key,
)
from devenv_api.models.log import LogEntry, is_progress_complete
from devenv_api.models.user import AuthenticatedUser

__all__ = [
    # Common
    "EnvironmentState",
    "JobOperation",
    "LogLevel",
    "PlanTier",
    "UserRole",
    # Environment
    "AccessDetails",
    "Environment",
    "EnvironmentCreate",
    "ResourceSpec",
    # Jobs
    "ControlJobData",
    "Job",
    "JobOutcome",
    "JobStatus",
    "ProvisionJobData",
    "RetryPolicy",
    "job_key",
    # Logs
    "LogEntry",
    "is_progress_complete",
    # Users
    "AuthenticatedUser",
]
