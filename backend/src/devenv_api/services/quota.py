"""QuotaService for enforcing per-plan resource limits on new environments."""

import logging

from pydantic import BaseModel, ConfigDict, Field

from devenv_api.core.store import EnvironmentStore, get_environment_store
from devenv_api.models.common import PlanTier
from devenv_api.models.environment import ResourceSpec
from devenv_api.services.environment import ACTIVE_STATES, EnvironmentValidationError

logger = logging.getLogger(__name__)

# Hard bounds regardless of plan
MIN_VCPUS = 1
MAX_VCPUS = 16
MIN_MEMORY_MB = 1024
MIN_DISK_GB = 10
MAX_DISK_GB = 500
MIN_DURATION_HOURS = 1


class PlanLimits(BaseModel):
    """Resource limits granted by a subscription plan.

    Attributes:
        max_vcpus: Maximum vCPUs per environment
        max_memory_mb: Maximum memory per environment
        max_disk_gb: Maximum disk per environment
        max_concurrent_environments: Environments that may hold resources at once
        max_duration_hours: Longest lifetime a request may ask for
    """

    model_config = ConfigDict(populate_by_name=True)

    max_vcpus: int = Field(alias="maxVcpus")
    max_memory_mb: int = Field(alias="maxMemoryMb")
    max_disk_gb: int = Field(alias="maxDiskGb")
    max_concurrent_environments: int = Field(alias="maxConcurrentEnvironments")
    max_duration_hours: int = Field(alias="maxDurationHours")


PLAN_LIMITS: dict[PlanTier, PlanLimits] = {
    PlanTier.FREE: PlanLimits(
        max_vcpus=2,
        max_memory_mb=4096,
        max_disk_gb=10,
        max_concurrent_environments=1,
        max_duration_hours=24,
    ),
    PlanTier.PRO: PlanLimits(
        max_vcpus=4,
        max_memory_mb=8192,
        max_disk_gb=50,
        max_concurrent_environments=3,
        max_duration_hours=72,
    ),
    PlanTier.UNLIMITED: PlanLimits(
        max_vcpus=8,
        max_memory_mb=16384,
        max_disk_gb=100,
        max_concurrent_environments=10,
        max_duration_hours=168,
    ),
}


class QuotaExceededError(EnvironmentValidationError):
    """Raised when a user's quota would be exceeded."""

    def __init__(self, message: str, quota_type: str, current: float, limit: float):
        super().__init__(message)
        self.quota_type = quota_type
        self.current = current
        self.limit = limit


class QuotaService:
    """Service for enforcing plan limits when environments are created.

    Checks:
    - Hard resource bounds, then the plan's per-environment resource limits
    - Requested lifetime against the plan's maximum duration
    - Concurrent environments holding resources

    Example:
        ```python
        service = QuotaService(store)
        service.check_can_create(user.id, user.plan, resources, duration_hours=24)
        ```
    """

    def __init__(self, store: EnvironmentStore | None = None) -> None:
        """Initialize the QuotaService.

        Args:
            store: Environment store used to count active environments
        """
        self.store = store or get_environment_store()

    def get_limits(self, plan: PlanTier) -> PlanLimits:
        """Get the limits of a plan."""
        return PLAN_LIMITS[plan]

    def check_resources(
        self, plan: PlanTier, resources: ResourceSpec, duration_hours: int
    ) -> None:
        """Validate requested resources and lifetime.

        Raises:
            EnvironmentValidationError: If a value is out of range or over the plan
        """
        if not MIN_VCPUS <= resources.vcpus <= MAX_VCPUS:
            raise EnvironmentValidationError(
                f"vcpus must be between {MIN_VCPUS} and {MAX_VCPUS}"
            )
        if resources.memory_mb < MIN_MEMORY_MB:
            raise EnvironmentValidationError(
                f"memoryMb must be at least {MIN_MEMORY_MB}"
            )
        if not MIN_DISK_GB <= resources.disk_gb <= MAX_DISK_GB:
            raise EnvironmentValidationError(
                f"diskGb must be between {MIN_DISK_GB} and {MAX_DISK_GB}"
            )
        if duration_hours < MIN_DURATION_HOURS:
            raise EnvironmentValidationError(
                f"durationHours must be at least {MIN_DURATION_HOURS}"
            )

        limits = self.get_limits(plan)
        if resources.vcpus > limits.max_vcpus:
            raise EnvironmentValidationError(
                f"Plan limit exceeded: max vCPUs is {limits.max_vcpus}"
            )
        if resources.memory_mb > limits.max_memory_mb:
            raise EnvironmentValidationError(
                f"Plan limit exceeded: max memory is {limits.max_memory_mb}MB"
            )
        if resources.disk_gb > limits.max_disk_gb:
            raise EnvironmentValidationError(
                f"Plan limit exceeded: max disk is {limits.max_disk_gb}GB"
            )
        if duration_hours > limits.max_duration_hours:
            raise EnvironmentValidationError(
                f"Plan limit exceeded: max duration is {limits.max_duration_hours} hours"
            )

    def get_active_environment_count(self, user_id: str) -> int:
        """Count a user's environments that hold or are acquiring resources."""
        return sum(1 for env in self.store.list_by_user(user_id) if env.state in ACTIVE_STATES)

    def check_concurrent_environments(self, user_id: str, plan: PlanTier) -> None:
        """Check the user can run another environment.

        Raises:
            QuotaExceededError: If the concurrent environment limit is reached
        """
        current = self.get_active_environment_count(user_id)
        limit = self.get_limits(plan).max_concurrent_environments

        if current >= limit:
            raise QuotaExceededError(
                f"Concurrent environment limit reached. You have {current} active "
                f"environments (limit: {limit}). Destroy one to create another.",
                quota_type="concurrent_environments",
                current=current,
                limit=limit,
            )

    def check_can_create(
        self,
        user_id: str,
        plan: PlanTier,
        resources: ResourceSpec,
        duration_hours: int,
    ) -> None:
        """Check all limits for creating a new environment.

        Raises:
            EnvironmentValidationError: If resources or duration are out of range
            QuotaExceededError: If the concurrent environment limit is reached
        """
        self.check_resources(plan, resources, duration_hours)
        self.check_concurrent_environments(user_id, plan)
        logger.debug(f"Quota check passed for user {user_id} on plan {plan.value}")

