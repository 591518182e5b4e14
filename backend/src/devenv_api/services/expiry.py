"""ExpiryService for enforcing environment lifetimes.

Every environment gets ``expires_at = created_at + duration_hours``. A
periodic sweep queues destruction of expired environments and purges
records that have stayed destroyed longer than the retention window.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from devenv_api.core.config import Settings, get_settings
from devenv_api.models.common import EnvironmentState, JobOperation
from devenv_api.models.environment import Environment
from devenv_api.services.environment import EnvironmentService
from devenv_api.services.job_queue import ControlQueue
from devenv_api.services.orchestrator import EnvironmentOrchestrator, get_orchestrator

logger = logging.getLogger(__name__)

# States in which an expired environment is destroyed. Transient states are
# picked up by a later sweep once they settle.
EXPIRABLE_STATES = frozenset(
    {
        EnvironmentState.RUNNING,
        EnvironmentState.STOPPED,
        EnvironmentState.ERROR,
        EnvironmentState.DESTROY_ERROR,
    }
)


@dataclass
class SweepMetrics:
    """Metrics from one sweep."""

    timestamp: datetime = field(default_factory=datetime.utcnow)
    environments_checked: int = 0
    destroys_queued: int = 0
    records_purged: int = 0
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0


class ExpiryService:
    """Finds expired environments and destroyed records past retention.

    Example:
        ```python
        service = ExpiryService(orchestrator=orchestrator)
        metrics = await service.run_sweep_cycle()
        print(f"Queued {metrics.destroys_queued} destroys")
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        orchestrator: EnvironmentOrchestrator | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._orchestrator = orchestrator
        self._last_run_metrics: SweepMetrics | None = None

    @property
    def orchestrator(self) -> EnvironmentOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = get_orchestrator()
        return self._orchestrator

    @property
    def environments(self) -> EnvironmentService:
        return self.orchestrator.environments

    @property
    def control_queue(self) -> ControlQueue:
        return self.orchestrator.control_queue

    def find_expired(self, now: datetime | None = None) -> list[Environment]:
        """Environments past ``expires_at`` in a state destroy can act on."""
        now = now or datetime.utcnow()
        return [
            env
            for env in self.environments.list_all()
            if env.state in EXPIRABLE_STATES and env.is_expired(now)
        ]

    def find_purgeable(self, now: datetime | None = None) -> list[Environment]:
        """Destroyed records older than the retention window."""
        cutoff = (now or datetime.utcnow()) - timedelta(
            hours=self.settings.destroyed_retention_hours
        )
        return [
            env
            for env in self.environments.list_all()
            if env.state == EnvironmentState.DESTROYED and env.updated_at < cutoff
        ]

    async def run_sweep_cycle(self, now: datetime | None = None) -> SweepMetrics:
        """Queue destroys for expired environments and purge old records."""
        start_time = datetime.utcnow()
        now = now or start_time
        metrics = SweepMetrics(timestamp=start_time)

        metrics.environments_checked = len(self.environments.list_all())

        for env in self.find_expired(now):
            try:
                result = await asyncio.to_thread(
                    self.control_queue.enqueue, JobOperation.DESTROY, env.id
                )
            except Exception as e:
                metrics.errors.append(f"Failed to queue destroy of {env.id}: {e}")
                continue
            if result.created:
                metrics.destroys_queued += 1
                self.orchestrator.progress_logger(env.user_id).info(
                    f"Environment '{env.name}' expired, destroying..."
                )
                logger.info(
                    f"Environment {env.id} expired at {env.expires_at.isoformat()}, "
                    f"destroy queued"
                )

        for env in self.find_purgeable(now):
            if self.environments.delete_record(env.id):
                metrics.records_purged += 1

        metrics.duration_seconds = (datetime.utcnow() - start_time).total_seconds()
        self._last_run_metrics = metrics

        logger.info(
            f"Expiry sweep complete: queued {metrics.destroys_queued} destroys, "
            f"purged {metrics.records_purged} records, "
            f"duration {metrics.duration_seconds:.2f}s"
        )
        return metrics

    def get_last_metrics(self) -> SweepMetrics | None:
        """Get metrics from the last sweep, or None if none has run."""
        return self._last_run_metrics


class ExpiryController:
    """Background controller that runs expiry sweeps at regular intervals.

    Example:
        ```python
        controller = ExpiryController()
        await controller.start()  # Start background sweeps
        # ... application runs ...
        await controller.stop()   # Stop on shutdown
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        expiry_service: ExpiryService | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            settings: Application settings (uses default if not provided)
            expiry_service: Optional ExpiryService instance
        """
        self.settings = settings or get_settings()
        self._expiry_service = expiry_service
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def expiry_service(self) -> ExpiryService:
        """Get the expiry service instance."""
        if self._expiry_service is None:
            self._expiry_service = ExpiryService(self.settings)
        return self._expiry_service

    @property
    def is_running(self) -> bool:
        """Check if the controller is running."""
        return self._running and self._task is not None

    async def _run_loop(self) -> None:
        """Background loop that runs sweeps at configured intervals."""
        interval = self.settings.expiry_sweep_interval_seconds
        logger.info(f"Expiry controller started, sweeping every {interval} seconds")

        while self._running:
            try:
                await self.expiry_service.run_sweep_cycle()
            except Exception as e:
                logger.error(f"Error in expiry sweep: {e}")

            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break

        logger.info("Expiry controller stopped")

    async def start(self) -> None:
        """Start background sweeps.

        Does nothing if the sweep is disabled in settings or already running.
        """
        if not self.settings.expiry_sweep_enabled:
            logger.info("Expiry sweep is disabled in settings")
            return

        if self._running:
            logger.warning("Expiry controller is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Expiry controller background task created")

    async def stop(self) -> None:
        """Stop background sweeps."""
        if not self._running:
            return

        self._running = False

        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        logger.info("Expiry controller stopped")


# Global controller instance
_expiry_controller: ExpiryController | None = None


def get_expiry_controller() -> ExpiryController:
    """Get the global ExpiryController instance."""
    global _expiry_controller
    if _expiry_controller is None:
        _expiry_controller = ExpiryController()
    return _expiry_controller
