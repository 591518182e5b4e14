"""EnvironmentService: environment records and the lifecycle state machine."""

import logging
from datetime import datetime
from typing import Any

from devenv_api.core.store import EnvironmentStore, get_environment_store
from devenv_api.models.common import EnvironmentState
from devenv_api.models.environment import Environment

logger = logging.getLogger(__name__)


class EnvironmentNotFoundError(Exception):
    """Raised when an environment is not found (or not visible to the caller)."""

    pass


class EnvironmentAccessDeniedError(Exception):
    """Raised when a caller lacks the role an operation requires."""

    pass


class InvalidStateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(
        self,
        env_id: str,
        current: EnvironmentState,
        target: EnvironmentState,
        message: str | None = None,
    ) -> None:
        super().__init__(
            message
            or f"Invalid transition for environment {env_id}: "
            f"{current.value} -> {target.value}"
        )
        self.env_id = env_id
        self.current = current
        self.target = target


class EnvironmentValidationError(Exception):
    """Raised when a create request fails validation."""

    pass


# Valid state transitions as a mapping from current state to allowed target states
VALID_TRANSITIONS: dict[EnvironmentState, set[EnvironmentState]] = {
    EnvironmentState.PENDING: {EnvironmentState.PROVISIONING},
    EnvironmentState.PROVISIONING: {EnvironmentState.RUNNING, EnvironmentState.ERROR},
    EnvironmentState.RUNNING: {EnvironmentState.STOPPING, EnvironmentState.DESTROYING},
    EnvironmentState.STOPPING: {EnvironmentState.STOPPED, EnvironmentState.ERROR},
    EnvironmentState.STOPPED: {EnvironmentState.STARTING, EnvironmentState.DESTROYING},
    EnvironmentState.STARTING: {EnvironmentState.RUNNING, EnvironmentState.ERROR},
    EnvironmentState.ERROR: {EnvironmentState.DESTROYING},
    EnvironmentState.DESTROYING: {
        EnvironmentState.DESTROYED,
        EnvironmentState.DESTROY_ERROR,
    },
    EnvironmentState.DESTROY_ERROR: {EnvironmentState.DESTROYING},
    EnvironmentState.DESTROYED: set(),  # Terminal state, no transitions allowed
}

# States an in-flight operation will move out of on its own
TRANSIENT_STATES = frozenset(
    {
        EnvironmentState.PENDING,
        EnvironmentState.PROVISIONING,
        EnvironmentState.STARTING,
        EnvironmentState.STOPPING,
    }
)

# States that hold (or may hold) compute resources
ACTIVE_STATES = frozenset(
    {
        EnvironmentState.PENDING,
        EnvironmentState.PROVISIONING,
        EnvironmentState.RUNNING,
        EnvironmentState.STOPPING,
        EnvironmentState.STOPPED,
        EnvironmentState.STARTING,
    }
)


def is_valid_transition(current: EnvironmentState, target: EnvironmentState) -> bool:
    """Whether ``current -> target`` is an edge of the state machine.

    Same-state writes are not edges: a repeated callback is rejected.
    """
    return target in VALID_TRANSITIONS.get(current, set())


def track_runtime(
    metadata: dict[str, Any],
    current: EnvironmentState,
    target: EnvironmentState,
    now: datetime,
) -> None:
    """Maintain runtime accounting fields in ``metadata`` for one transition.

    ``lastStartedAt`` is stamped on entering ``running``. Leaving ``running``
    stamps ``lastStoppedAt`` and adds the whole minutes since the last start
    to ``totalRuntimeMinutes``.
    """
    if target == EnvironmentState.RUNNING:
        metadata["lastStartedAt"] = now.isoformat()
        return
    if current != EnvironmentState.RUNNING:
        return

    total = int(metadata.get("totalRuntimeMinutes") or 0)
    started = metadata.get("lastStartedAt")
    if started:
        elapsed = now - datetime.fromisoformat(started)
        total += max(int(elapsed.total_seconds() // 60), 0)
    metadata["totalRuntimeMinutes"] = total
    metadata["lastStoppedAt"] = now.isoformat()


class EnvironmentService:
    """Service for environment records with state machine semantics.

    Every state change goes through :meth:`transition_state`, which validates
    the edge and writes with compare-and-swap so two concurrent writers cannot
    both move the record out of the same state.

    Example:
        ```python
        service = get_environment_service()

        env = service.create_record(Environment(userId="user-1"))
        env = service.transition_state(env.id, EnvironmentState.PROVISIONING)
        env = service.transition_state(
            env.id, EnvironmentState.RUNNING, {"host": "10.0.0.5"}
        )
        ```
    """

    # Retries of a compare-and-swap that lost a race before re-validating
    max_write_attempts = 5

    def __init__(self, store: EnvironmentStore | None = None) -> None:
        """Initialize the EnvironmentService.

        Args:
            store: Record store (uses the global store if not provided)
        """
        self.store = store or get_environment_store()

    # -------------------------------------------------------------------------
    # State Machine Validation
    # -------------------------------------------------------------------------

    def _assert_transition(
        self, env_id: str, current: EnvironmentState, target: EnvironmentState
    ) -> None:
        """Assert that a state transition is valid, raising if not.

        Raises:
            InvalidStateTransitionError: If transition is not valid
        """
        if not is_valid_transition(current, target):
            raise InvalidStateTransitionError(env_id, current, target)

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def create_record(self, environment: Environment) -> Environment:
        """Persist a new environment record."""
        now = datetime.utcnow()
        environment.metadata.setdefault("stateTimestamps", {})[
            environment.state.value
        ] = now.isoformat()
        created = self.store.create(environment)
        logger.info(
            f"Created environment {created.id} for user {created.user_id} "
            f"in state {created.state.value}"
        )
        return created

    def get(self, env_id: str) -> Environment:
        """Get an environment by ID.

        Raises:
            EnvironmentNotFoundError: If environment doesn't exist
        """
        env = self.store.get(env_id)
        if env is None:
            raise EnvironmentNotFoundError(f"Environment not found: {env_id}")
        return env

    def list_for_user(self, user_id: str) -> list[Environment]:
        """List a user's environments, newest first."""
        environments = self.store.list_by_user(user_id)
        return sorted(environments, key=lambda e: e.created_at, reverse=True)

    def list_all(self) -> list[Environment]:
        """List every environment record."""
        return self.store.list_all()

    def delete_record(self, env_id: str) -> bool:
        """Remove a record from the store."""
        deleted = self.store.delete(env_id)
        if deleted:
            logger.info(f"Purged environment record {env_id}")
        return deleted

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def transition_state(
        self,
        env_id: str,
        new_state: EnvironmentState,
        metadata: dict[str, Any] | None = None,
    ) -> Environment:
        """Move an environment along one edge of the state machine.

        Caller metadata is merged over the stored metadata. ``previousState``
        and ``stateTimestamps[new_state]`` are maintained automatically, as are
        the runtime fields written by :func:`track_runtime`.

        Args:
            env_id: Environment's unique identifier
            new_state: Target state
            metadata: Optional details to merge (host, vmId, lastError...)

        Returns:
            Updated Environment

        Raises:
            EnvironmentNotFoundError: If environment doesn't exist
            InvalidStateTransitionError: If the edge is not in the table
        """
        for _ in range(self.max_write_attempts):
            env = self.get(env_id)
            current = env.state
            self._assert_transition(env_id, current, new_state)

            now = datetime.utcnow()
            merged = {**env.metadata, **(metadata or {})}
            timestamps = dict(env.metadata.get("stateTimestamps") or {})
            timestamps[new_state.value] = now.isoformat()
            merged["stateTimestamps"] = timestamps
            merged["previousState"] = current.value
            track_runtime(merged, current, new_state, now)

            updated = env.model_copy(
                update={"state": new_state, "metadata": merged, "updated_at": now}
            )
            if self.store.compare_and_swap(updated, expected_state=current):
                logger.info(
                    f"Environment {env_id} transitioned {current.value} -> {new_state.value}"
                )
                return updated

            logger.debug(f"Environment {env_id} changed concurrently, re-validating")

        raise InvalidStateTransitionError(
            env_id,
            current,
            new_state,
            message=f"Environment {env_id} kept changing while moving to {new_state.value}",
        )


# Global service instance
_environment_service: EnvironmentService | None = None


def get_environment_service() -> EnvironmentService:
    """Get the global EnvironmentService instance."""
    global _environment_service
    if _environment_service is None:
        _environment_service = EnvironmentService()
    return _environment_service
