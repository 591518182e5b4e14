"""VM workers: consume the provision and control queues.

A worker reserves a job, moves the environment into the matching in-progress
state, calls the provisioning backend and reports the result through the
orchestrator's ``transition_state``. Any number of workers may run, in one
process or many; the queues are their only coordination point.

Rules a worker follows:

- A retried job finds the environment already in the in-progress state and
  carries on from there.
- A job whose environment is no longer in a state it can act on completes
  as skipped. A transition rejected by the state machine is a stale callback
  and is logged, never retried.
- Destroy requested while another operation is in flight is deferred until
  the environment settles.
- When a job runs out of attempts the environment moves to ``error``
  (``destroy_error`` for a failed teardown) with ``lastError`` in metadata.
"""

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from devenv_api.core.config import Settings, get_settings
from devenv_api.core.telemetry import get_tracer
from devenv_api.models.common import EnvironmentState, JobOperation
from devenv_api.models.environment import Environment
from devenv_api.models.job import ControlJobData, Job, JobOutcome, ProvisionJobData
from devenv_api.services.environment import (
    TRANSIENT_STATES,
    EnvironmentNotFoundError,
    InvalidStateTransitionError,
)
from devenv_api.services.job_queue import JobNotActiveError, JobQueue
from devenv_api.services.orchestrator import EnvironmentOrchestrator, get_orchestrator
from devenv_api.services.provisioning import (
    ProvisioningBackend,
    VMSpec,
    get_provisioning_backend,
)
from devenv_api.services.provision_log import ProvisionLogger

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


@dataclass
class ControlStep:
    """How a control operation moves an environment.

    Attributes:
        sources: States the operation may start from
        in_progress: State held while the backend call runs
        done: State reported on success
        failed: State reported once attempts are exhausted
    """

    sources: frozenset[EnvironmentState]
    in_progress: EnvironmentState
    done: EnvironmentState
    failed: EnvironmentState


CONTROL_STEPS: dict[JobOperation, ControlStep] = {
    JobOperation.START: ControlStep(
        sources=frozenset({EnvironmentState.STOPPED}),
        in_progress=EnvironmentState.STARTING,
        done=EnvironmentState.RUNNING,
        failed=EnvironmentState.ERROR,
    ),
    JobOperation.STOP: ControlStep(
        sources=frozenset({EnvironmentState.RUNNING}),
        in_progress=EnvironmentState.STOPPING,
        done=EnvironmentState.STOPPED,
        failed=EnvironmentState.ERROR,
    ),
    JobOperation.DESTROY: ControlStep(
        sources=frozenset(
            {
                EnvironmentState.RUNNING,
                EnvironmentState.STOPPED,
                EnvironmentState.ERROR,
                EnvironmentState.DESTROY_ERROR,
            }
        ),
        in_progress=EnvironmentState.DESTROYING,
        done=EnvironmentState.DESTROYED,
        failed=EnvironmentState.DESTROY_ERROR,
    ),
}


@dataclass
class WorkerMetrics:
    """Counters of jobs handled by a worker."""

    started_at: datetime = field(default_factory=datetime.utcnow)
    jobs_processed: int = 0
    jobs_completed: int = 0
    jobs_skipped: int = 0
    jobs_deferred: int = 0
    jobs_retried: int = 0
    jobs_failed: int = 0


class VMWorker:
    """Processes provision and control jobs against a provisioning backend.

    Example:
        ```python
        worker = VMWorker(orchestrator=orchestrator, backend=backend)

        # Process at most one job from each queue
        await worker.run_once(worker.provision_queue)
        await worker.run_once(worker.control_queue)
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        orchestrator: EnvironmentOrchestrator | None = None,
        backend: ProvisioningBackend | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            settings: Application settings (uses default if not provided)
            orchestrator: Orchestrator used to read records and report transitions
            backend: Provisioning backend that does the actual work
        """
        self.settings = settings or get_settings()
        self.orchestrator = orchestrator or get_orchestrator()
        self.backend = backend or get_provisioning_backend()
        self.metrics = WorkerMetrics()

    @property
    def provision_queue(self) -> JobQueue:
        return self.orchestrator.provision_queue

    @property
    def control_queue(self) -> JobQueue:
        return self.orchestrator.control_queue

    # -------------------------------------------------------------------------
    # Queue plumbing
    # -------------------------------------------------------------------------

    async def run_once(self, queue: JobQueue) -> bool:
        """Reserve and process one job from ``queue``.

        Returns:
            True if a job was processed, False if the queue had nothing ready
        """
        job = queue.reserve()
        if job is None:
            return False

        self.metrics.jobs_processed += 1
        heartbeat = asyncio.create_task(self._keep_leased(queue, job))
        with tracer.start_as_current_span(f"vm_worker.{job.name}") as span:
            span.set_attribute("job.id", job.id)
            span.set_attribute("job.queue", job.queue)
            span.set_attribute("job.attempt", job.attempts_made)
            try:
                if job.queue == self.provision_queue.name:
                    await self.process_provision(job)
                else:
                    await self.process_control(job)
            except asyncio.CancelledError:
                self._return_interrupted(queue, job)
                raise
            except Exception as e:
                # Handlers report expected failures themselves; this covers the rest
                logger.exception(f"Unexpected error processing job {job.id}")
                span.record_exception(e)
                self._fail_unexpected(queue, job, e)
            finally:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat
        return True

    async def _keep_leased(self, queue: JobQueue, job: Job) -> None:
        """Renew the job's lease until cancelled."""
        interval = max(queue.lease_seconds / 3, 0.01)
        while True:
            await asyncio.sleep(interval)
            try:
                queue.renew(job)
            except JobNotActiveError:
                return
            except Exception as e:
                logger.warning(f"Failed to renew lease of job {job.id}: {e}")

    def _return_interrupted(self, queue: JobQueue, job: Job) -> None:
        """Put a job cut off by shutdown back on its queue, attempt not counted."""
        try:
            queue.defer(job, 0)
        except JobNotActiveError:
            return
        except Exception as e:
            # The lease runs out and another worker recovers the job
            logger.error(f"Could not return interrupted job {job.id}: {e}")
            return
        logger.warning(f"Job {job.id} interrupted by shutdown, returned to {queue.name}")

    def _fail_unexpected(self, queue: JobQueue, job: Job, error: Exception) -> None:
        try:
            queue.fail(job, f"{type(error).__name__}: {error}")
        except JobNotActiveError:
            logger.warning(f"Job {job.id} was already settled when it failed")

    def _complete(self, queue: JobQueue, job: Job, result: dict[str, Any]) -> None:
        queue.complete(job, result)
        self.metrics.jobs_completed += 1

    def _skip(self, queue: JobQueue, job: Job, reason: str) -> None:
        logger.info(f"Skipping job {job.id}: {reason}")
        queue.complete(job, {"skipped": reason})
        self.metrics.jobs_skipped += 1

    def _transition(
        self,
        env_id: str,
        state: EnvironmentState,
        metadata: dict[str, Any] | None = None,
    ) -> Environment | None:
        """Report a transition; a stale callback is logged and returns None."""
        try:
            return self.orchestrator.transition_state(env_id, state, metadata)
        except InvalidStateTransitionError as e:
            logger.warning(f"Stale transition ignored: {e}")
            return None

    def _report_failure(
        self,
        queue: JobQueue,
        job: Job,
        env: Environment,
        error: Exception,
        failed_state: EnvironmentState,
        plog: ProvisionLogger,
        label: str,
    ) -> None:
        """Hand a failed attempt to the queue and settle the state if exhausted."""
        message = str(error) or type(error).__name__
        outcome = queue.fail(job, message)

        if outcome == JobOutcome.RETRY_SCHEDULED:
            self.metrics.jobs_retried += 1
            delay = queue.policy.backoff_for(job.attempts_made)
            # Info level so polling clients keep watching while retries remain
            plog.info(
                f"{label} attempt {job.attempts_made}/{job.max_attempts} failed: "
                f"{message}. Retrying in {delay:g}s..."
            )
            return

        self.metrics.jobs_failed += 1
        plog.error(f"{label} failed after {job.attempts_made} attempts: {message}")
        self._transition(
            env.id,
            failed_state,
            {
                "lastError": message,
                "failedAttempts": job.attempts_made,
                "failedOperation": job.name,
                "failedAt": datetime.utcnow().isoformat(),
            },
        )

    # -------------------------------------------------------------------------
    # Provision jobs
    # -------------------------------------------------------------------------

    async def process_provision(self, job: Job) -> None:
        """Create the VM for a ``provision-<id>`` job."""
        queue = self.provision_queue
        data = ProvisionJobData.model_validate(job.data)
        plog = self.orchestrator.progress_logger(data.user_id)

        try:
            env = self.orchestrator.get_environment(data.environment_id)
        except EnvironmentNotFoundError:
            self._skip(queue, job, "environment no longer exists")
            return

        if env.state == EnvironmentState.PENDING:
            if self._transition(env.id, EnvironmentState.PROVISIONING) is None:
                self._skip(queue, job, "environment changed before provisioning")
                return
        elif env.state != EnvironmentState.PROVISIONING:
            self._skip(queue, job, f"environment is {env.state.value}")
            return

        plog.info(
            f"Provisioning '{env.name}' (attempt {job.attempts_made}/{job.max_attempts})..."
        )
        try:
            details = await self.backend.create_vm(
                VMSpec(
                    environment_id=env.id,
                    user_id=env.user_id,
                    vcpus=data.vcpus,
                    memory_mb=data.memory_mb,
                    disk_gb=data.disk_gb,
                    repository_url=data.repository_url,
                    init_script=data.init_script,
                    environment_vars=data.environment_vars or {},
                )
            )
        except Exception as e:
            logger.warning(f"Provisioning attempt for {env.id} failed: {e}")
            self._report_failure(
                queue, job, env, e, EnvironmentState.ERROR, plog, "Provisioning"
            )
            return

        plog.info(f"VM {details.vm_id[:12]} is up, finalizing...")
        if self._transition(env.id, EnvironmentState.RUNNING, details.to_metadata()) is None:
            plog.error(f"Environment '{env.name}' changed while provisioning")
            self._complete(queue, job, {"vmId": details.vm_id, "stale": True})
            return

        plog.success("Provisioning complete!")
        self._complete(queue, job, {"vmId": details.vm_id})

    # -------------------------------------------------------------------------
    # Control jobs
    # -------------------------------------------------------------------------

    def _backend_call(
        self, operation: JobOperation, vm_id: str | None
    ) -> Callable[[], Awaitable[None]] | None:
        if vm_id is None:
            return None
        calls = {
            JobOperation.START: self.backend.start_vm,
            JobOperation.STOP: self.backend.stop_vm,
            JobOperation.DESTROY: self.backend.destroy_vm,
        }
        call = calls[operation]
        return lambda: call(vm_id)

    async def process_control(self, job: Job) -> None:
        """Run a ``start``, ``stop`` or ``destroy`` job."""
        queue = self.control_queue
        data = ControlJobData.model_validate(job.data)
        operation = JobOperation(job.name)
        step = CONTROL_STEPS[operation]

        try:
            env = self.orchestrator.get_environment(data.environment_id)
        except EnvironmentNotFoundError:
            self._skip(queue, job, "environment no longer exists")
            return

        plog = self.orchestrator.progress_logger(env.user_id)

        if operation == JobOperation.DESTROY:
            if env.state == EnvironmentState.DESTROYED:
                self._skip(queue, job, "environment already destroyed")
                return
            if env.state in TRANSIENT_STATES:
                # Held until the in-flight operation settles; no attempt consumed
                queue.defer(job, self.settings.destroy_defer_seconds)
                self.metrics.jobs_deferred += 1
                logger.info(
                    f"Destroy of {env.id} deferred while environment is {env.state.value}"
                )
                return

        if env.state in step.sources:
            if self._transition(env.id, step.in_progress) is None:
                self._skip(queue, job, f"environment changed before {operation.value}")
                return
        elif env.state != step.in_progress:
            self._skip(queue, job, f"cannot {operation.value} while {env.state.value}")
            return

        label = operation.value.capitalize()
        plog.info(f"{label} of '{env.name}' in progress...")
        call = self._backend_call(operation, env.metadata.get("vmId"))
        try:
            if call is not None:
                await call()
            elif operation != JobOperation.DESTROY:
                raise RuntimeError(f"Environment {env.id} has no VM to {operation.value}")
        except Exception as e:
            logger.warning(f"{label} of {env.id} failed: {e}")
            self._report_failure(queue, job, env, e, step.failed, plog, label)
            return

        if self._transition(env.id, step.done) is None:
            self._complete(queue, job, {"stale": True})
            return

        plog.success(f"{label} of '{env.name}' complete")
        self._complete(queue, job, {"state": step.done.value})


class WorkerController:
    """Background controller running worker loops for both queues.

    Each queue gets as many concurrent loops as its configured concurrency.
    A loop that finds its queue empty sleeps for the poll interval.

    Example:
        ```python
        controller = WorkerController()
        await controller.start()
        # ... application runs ...
        await controller.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        worker: VMWorker | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            settings: Application settings (uses default if not provided)
            worker: Optional VMWorker instance
        """
        self.settings = settings or get_settings()
        self._worker = worker
        self._tasks: list[asyncio.Task] = []
        self._running = False

    @property
    def worker(self) -> VMWorker:
        """Get the worker instance."""
        if self._worker is None:
            self._worker = VMWorker(self.settings)
        return self._worker

    @property
    def is_running(self) -> bool:
        """Check if the controller is running."""
        return self._running and bool(self._tasks)

    async def _run_loop(self, queue: JobQueue, slot: int) -> None:
        """Process jobs from ``queue`` until stopped."""
        interval = self.settings.worker_poll_interval_seconds
        logger.debug(f"Worker loop {queue.name}#{slot} started")

        while self._running:
            try:
                processed = await self.worker.run_once(queue)
            except Exception as e:
                logger.error(f"Error in worker loop {queue.name}#{slot}: {e}")
                processed = False

            if processed:
                continue
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break

        logger.debug(f"Worker loop {queue.name}#{slot} stopped")

    async def start(self) -> None:
        """Start the worker loops. Does nothing if already running."""
        if self._running:
            logger.warning("Worker controller is already running")
            return

        self._running = True
        pools = [
            (self.worker.provision_queue, self.settings.provision_worker_concurrency),
            (self.worker.control_queue, self.settings.control_worker_concurrency),
        ]
        for queue, concurrency in pools:
            for slot in range(concurrency):
                self._tasks.append(asyncio.create_task(self._run_loop(queue, slot)))

        logger.info(
            f"Worker controller started: {self.settings.provision_worker_concurrency} "
            f"provision and {self.settings.control_worker_concurrency} control loops"
        )

    async def stop(self) -> None:
        """Stop all worker loops.

        Loops stop taking new jobs at once. Jobs in flight get
        ``worker_shutdown_timeout_seconds`` to finish; any still running
        after that are interrupted and returned to their queue.
        """
        if not self._running:
            return

        self._running = False
        timeout = self.settings.worker_shutdown_timeout_seconds
        pending: set[asyncio.Task] = set()
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        if pending:
            logger.warning(
                f"{len(pending)} worker loops still busy after {timeout:g}s, interrupting"
            )
            for task in pending:
                task.cancel()
            for task in pending:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._tasks = []

        logger.info("Worker controller stopped")
