"""EnvironmentOrchestrator: the façade the API layer and workers talk to.

Orchestrator calls are synchronous: validate, write the record, enqueue a
job, return. The slow work happens in workers, which report back through
:meth:`EnvironmentOrchestrator.transition_state`.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from devenv_api.core.config import Settings, get_settings
from devenv_api.core.secrets import SecretCipher, generate_access_token, get_secret_cipher
from devenv_api.models.common import EnvironmentState, JobOperation
from devenv_api.models.environment import (
    AccessDetails,
    Environment,
    EnvironmentCreate,
    ResourceSpec,
)
from devenv_api.models.job import Job, ProvisionJobData
from devenv_api.models.log import LogEntry, is_progress_complete
from devenv_api.models.user import AuthenticatedUser
from devenv_api.services.environment import (
    EnvironmentAccessDeniedError,
    EnvironmentNotFoundError,
    EnvironmentService,
    EnvironmentValidationError,
    InvalidStateTransitionError,
    get_environment_service,
)
from devenv_api.services.job_queue import (
    ControlQueue,
    ProvisionQueue,
    get_control_queue,
    get_provision_queue,
)
from devenv_api.services.provision_log import (
    ProvisionLogBuffer,
    ProvisionLogger,
    get_provision_log_buffer,
)
from devenv_api.services.quota import QuotaService

logger = logging.getLogger(__name__)

DEFAULT_ENVIRONMENT_NAME = "Dev Environment"


@dataclass
class FleetStats:
    """Aggregate view of every environment for operators."""

    total: int = 0
    by_state: dict[str, int] = field(default_factory=dict)
    total_vcpus: int = 0
    total_memory_mb: int = 0
    running_vcpus: int = 0
    running_memory_mb: int = 0

    @classmethod
    def from_environments(cls, environments: list[Environment]) -> "FleetStats":
        stats = cls(total=len(environments))
        for env in environments:
            stats.by_state[env.state.value] = stats.by_state.get(env.state.value, 0) + 1
            if env.state == EnvironmentState.DESTROYED:
                continue
            stats.total_vcpus += env.resources.vcpus
            stats.total_memory_mb += env.resources.memory_mb
            if env.state == EnvironmentState.RUNNING:
                stats.running_vcpus += env.resources.vcpus
                stats.running_memory_mb += env.resources.memory_mb
        return stats


class EnvironmentOrchestrator:
    """Coordinates environment records, job queues and the progress log.

    Every collaborator is injected so tests can run the whole flow against
    in-memory fakes.

    Example:
        ```python
        orchestrator = get_orchestrator()

        env = orchestrator.create_environment(
            EnvironmentCreate(name="demo", resources={"vcpus": 2}), user
        )
        # ... a worker provisions it and reports back ...
        orchestrator.get_environment(env.id).state  # EnvironmentState.RUNNING

        job = orchestrator.destroy_environment(env.id, user)
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        environment_service: EnvironmentService | None = None,
        provision_queue: ProvisionQueue | None = None,
        control_queue: ControlQueue | None = None,
        log_buffer: ProvisionLogBuffer | None = None,
        cipher: SecretCipher | None = None,
        quota_service: QuotaService | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.environments = environment_service or get_environment_service()
        self.provision_queue = provision_queue or get_provision_queue()
        self.control_queue = control_queue or get_control_queue()
        self.log_buffer = log_buffer or get_provision_log_buffer()
        self.cipher = cipher or get_secret_cipher(self.settings)
        self.quota = quota_service or QuotaService(self.environments.store)

    def progress_logger(self, user_id: str) -> ProvisionLogger:
        """Progress logger writing to a user's log buffer."""
        return ProvisionLogger(self.log_buffer, user_id)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def _resolve_resources(self, request: EnvironmentCreate) -> ResourceSpec:
        requested = {
            "vcpus": self.settings.default_vcpus,
            "memoryMb": self.settings.default_memory_mb,
            "diskGb": self.settings.default_disk_gb,
            **(request.resources or {}),
        }
        try:
            return ResourceSpec.model_validate(requested)
        except ValidationError as e:
            raise EnvironmentValidationError(f"Invalid resources: {e}") from e

    def create_environment(
        self, request: EnvironmentCreate, user: AuthenticatedUser
    ) -> Environment:
        """Create an environment and queue its provisioning.

        Creation is never deduplicated: two identical requests produce two
        environments.

        Args:
            request: Create parameters; unset values fall back to defaults
            user: Authenticated owner

        Returns:
            The new record in ``pending`` state

        Raises:
            EnvironmentValidationError: If resources are out of range or over plan
            QuotaExceededError: If the plan's concurrent environment limit is reached
        """
        resources = self._resolve_resources(request)
        duration_hours = request.duration_hours or self.settings.default_duration_hours
        self.quota.check_can_create(user.id, user.plan, resources, duration_hours)

        # Must precede the enqueue: a worker may log as soon as the job exists
        self._reset_progress(user.id)

        now = datetime.utcnow()
        env = Environment(
            userId=user.id,
            name=request.name or DEFAULT_ENVIRONMENT_NAME,
            resources=resources,
            durationHours=duration_hours,
            repositoryUrl=request.repository_url,
            initScript=request.init_script,
            environmentVars=request.environment_vars,
            state=EnvironmentState.PENDING,
            accessTokenEncrypted=self.cipher.encrypt(generate_access_token()),
            createdAt=now,
            updatedAt=now,
            expiresAt=now + timedelta(hours=duration_hours),
        )
        env = self.environments.create_record(env)

        try:
            result = self.provision_queue.enqueue_provision(
                ProvisionJobData(
                    environmentId=env.id,
                    userId=env.user_id,
                    vcpus=resources.vcpus,
                    memoryMb=resources.memory_mb,
                    diskGb=resources.disk_gb,
                    repositoryUrl=env.repository_url,
                    initScript=env.init_script,
                    environmentVars=env.environment_vars,
                )
            )
        except Exception:
            # A pending record without a job would never leave pending
            logger.exception(f"Failed to queue provisioning for environment {env.id}")
            self.environments.delete_record(env.id)
            raise

        self.progress_logger(user.id).info(
            f"Environment '{env.name}' queued for provisioning "
            f"({resources.vcpus} vCPU, {resources.memory_mb}MB RAM, {resources.disk_gb}GB disk)"
        )
        logger.info(f"Environment {env.id} created, provision job {result.job.id}")
        return env

    def _reset_progress(self, user_id: str) -> None:
        # Start each session with an empty feed so old completion lines don't end polling
        try:
            self.log_buffer.clear(user_id)
        except Exception as e:
            logger.warning(f"Failed to clear provision logs for user {user_id}: {e}")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_environment(self, env_id: str) -> Environment:
        """Get a record without checking ownership.

        Raises:
            EnvironmentNotFoundError: If the environment doesn't exist
        """
        return self.environments.get(env_id)

    def get_owned_environment(self, env_id: str, user: AuthenticatedUser) -> Environment:
        """Get a record the caller owns (admins see everything).

        Raises:
            EnvironmentNotFoundError: If missing or owned by someone else
        """
        env = self.environments.get(env_id)
        if env.user_id != user.id and not user.is_admin:
            raise EnvironmentNotFoundError(f"Environment not found: {env_id}")
        return env

    def list_environments(self, user_id: str) -> list[Environment]:
        """List a user's environments that have not been purged."""
        return self.environments.list_for_user(user_id)

    def list_all_environments(
        self, user: AuthenticatedUser
    ) -> tuple[list[Environment], FleetStats]:
        """Every environment record with fleet totals, newest first.

        Raises:
            EnvironmentAccessDeniedError: If the caller is not an admin
        """
        if not user.is_admin:
            raise EnvironmentAccessDeniedError("Admin access required")
        environments = sorted(
            self.environments.list_all(), key=lambda e: e.created_at, reverse=True
        )
        return environments, FleetStats.from_environments(environments)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def transition_state(
        self,
        env_id: str,
        state: EnvironmentState,
        metadata: dict[str, Any] | None = None,
    ) -> Environment:
        """Apply a state transition reported by a worker.

        Raises:
            EnvironmentNotFoundError: If the environment doesn't exist
            InvalidStateTransitionError: If the edge is not allowed
        """
        return self.environments.transition_state(env_id, state, metadata)

    # -------------------------------------------------------------------------
    # Control operations
    # -------------------------------------------------------------------------

    def _enqueue_control(
        self,
        env: Environment,
        operation: JobOperation,
        user: AuthenticatedUser,
    ) -> Job:
        result = self.control_queue.enqueue(operation, env.id)
        if result.created:
            self.progress_logger(env.user_id).info(
                f"{operation.value.capitalize()} requested for environment '{env.name}'"
            )
        logger.info(
            f"User {user.id} requested {operation.value} of environment {env.id} "
            f"(job {result.job.id}, new={result.created})"
        )
        return result.job

    def destroy_environment(self, env_id: str, user: AuthenticatedUser) -> Job:
        """Queue destruction of an environment.

        Returns once the job is accepted. Destroy requested while another
        operation is in flight is held by the worker until it can apply.

        Raises:
            EnvironmentNotFoundError: If missing or not owned by the caller
            InvalidStateTransitionError: If the environment is already destroyed
        """
        env = self.get_owned_environment(env_id, user)
        if env.state == EnvironmentState.DESTROYED:
            raise InvalidStateTransitionError(
                env.id,
                env.state,
                EnvironmentState.DESTROYING,
                message=f"Environment {env.id} is already destroyed",
            )
        return self._enqueue_control(env, JobOperation.DESTROY, user)

    def start_environment(self, env_id: str, user: AuthenticatedUser) -> Job:
        """Queue a start of a stopped environment.

        Raises:
            EnvironmentNotFoundError: If missing or not owned by the caller
            InvalidStateTransitionError: If the environment is not stopped
        """
        env = self.get_owned_environment(env_id, user)
        if env.state != EnvironmentState.STOPPED:
            raise InvalidStateTransitionError(env.id, env.state, EnvironmentState.STARTING)
        return self._enqueue_control(env, JobOperation.START, user)

    def stop_environment(self, env_id: str, user: AuthenticatedUser) -> Job:
        """Queue a stop of a running environment.

        Raises:
            EnvironmentNotFoundError: If missing or not owned by the caller
            InvalidStateTransitionError: If the environment is not running
        """
        env = self.get_owned_environment(env_id, user)
        if env.state != EnvironmentState.RUNNING:
            raise InvalidStateTransitionError(env.id, env.state, EnvironmentState.STOPPING)
        return self._enqueue_control(env, JobOperation.STOP, user)

    # -------------------------------------------------------------------------
    # Access and progress
    # -------------------------------------------------------------------------

    def get_access_details(self, env_id: str, user: AuthenticatedUser) -> AccessDetails:
        """Connection details with the decrypted access token.

        Raises:
            EnvironmentNotFoundError: If missing or not owned by the caller
            SecretDecryptionError: If the stored token cannot be decrypted
        """
        env = self.get_owned_environment(env_id, user)
        token = (
            self.cipher.decrypt(env.access_token_encrypted)
            if env.access_token_encrypted
            else None
        )
        return AccessDetails(
            environmentId=env.id,
            state=env.state,
            host=env.metadata.get("host"),
            ipAddress=env.metadata.get("ipAddress"),
            sshPort=env.metadata.get("sshPort"),
            username=env.metadata.get("username"),
            accessToken=token,
        )

    def get_provision_logs(
        self, env_id: str, user: AuthenticatedUser
    ) -> tuple[list[LogEntry], bool]:
        """Current progress feed of the environment's owner.

        Returns:
            Tuple of (entries in insertion order, whether progress is complete)
        """
        env = self.get_owned_environment(env_id, user)
        try:
            entries = self.log_buffer.read_all(env.user_id)
        except Exception as e:
            logger.warning(f"Failed to read provision logs for user {env.user_id}: {e}")
            entries = []
        return entries, is_progress_complete(entries)


# Global orchestrator instance
_orchestrator: EnvironmentOrchestrator | None = None


def get_orchestrator() -> EnvironmentOrchestrator:
    """Get the global EnvironmentOrchestrator instance."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = EnvironmentOrchestrator()
    return _orchestrator
