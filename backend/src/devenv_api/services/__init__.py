"""Service layer for business logic."""

from devenv_api.services.environment import (
    VALID_TRANSITIONS,
    EnvironmentAccessDeniedError,
    EnvironmentNotFoundError,
    EnvironmentService,
    EnvironmentValidationError,
    InvalidStateTransitionError,
    get_environment_service,
)
from devenv_api.services.expiry import (
    ExpiryController,
    ExpiryService,
    SweepMetrics,
    get_expiry_controller,
)
from devenv_api.services.job_queue import (
    ControlQueue,
    EnqueueResult,
    JobNotActiveError,
    JobQueue,
    ProvisionQueue,
    QueueCounts,
    get_control_queue,
    get_provision_queue,
)
from devenv_api.services.orchestrator import EnvironmentOrchestrator, FleetStats, get_orchestrator
from devenv_api.services.provision_log import (
    InMemoryProvisionLogBuffer,
    ProvisionLogBuffer,
    ProvisionLogger,
    RedisProvisionLogBuffer,
    get_provision_log_buffer,
)
from devenv_api.services.provisioning import (
    DockerProvisioningBackend,
    ProvisioningBackend,
    ProvisioningError,
    VMDetails,
    VMSpec,
    get_provisioning_backend,
)
from devenv_api.services.quota import PLAN_LIMITS, PlanLimits, QuotaExceededError, QuotaService
from devenv_api.services.vm_worker import VMWorker, WorkerController, WorkerMetrics

__all__ = [
    # Environment
    "VALID_TRANSITIONS",
    "EnvironmentAccessDeniedError",
    "EnvironmentNotFoundError",
    "EnvironmentService",
    "EnvironmentValidationError",
    "InvalidStateTransitionError",
    "get_environment_service",
    # Expiry
    "ExpiryController",
    "ExpiryService",
    "SweepMetrics",
    "get_expiry_controller",
    # Job queues
    "ControlQueue",
    "EnqueueResult",
    "JobNotActiveError",
    "JobQueue",
    "ProvisionQueue",
    "QueueCounts",
    "get_control_queue",
    "get_provision_queue",
    # Orchestrator
    "EnvironmentOrchestrator",
    "FleetStats",
    "get_orchestrator",
    # Provision logs
    "InMemoryProvisionLogBuffer",
    "ProvisionLogBuffer",
    "ProvisionLogger",
    "RedisProvisionLogBuffer",
    "get_provision_log_buffer",
    # Provisioning backends
    "DockerProvisioningBackend",
    "ProvisioningBackend",
    "ProvisioningError",
    "VMDetails",
    "VMSpec",
    "get_provisioning_backend",
    # Quotas
    "PLAN_LIMITS",
    "PlanLimits",
    "QuotaExceededError",
    "QuotaService",
    # Workers
    "VMWorker",
    "WorkerController",
    "WorkerMetrics",
]
