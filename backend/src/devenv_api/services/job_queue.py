"""Durable job queues for environment provisioning and control operations.

Two queues with different risk profiles:

- ``vm-provision``: slow, resource-allocating jobs (3 attempts, backoff
  5s, 10s, 20s...).
- ``vm-control``: start, stop and destroy (2 attempts, backoff 2s, 4s...).

Every job is added under a deterministic key such as ``provision-<env id>``.
While a job holds its key, further requests for the same key are absorbed
and return the existing job. This is the only mechanism that keeps two
workers from running the same operation on the same environment at once.

The queues know nothing about environment states. When a job runs out of
attempts the queue reports it and the worker decides what that means.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from devenv_api.core.broker import QueueBroker, get_queue_broker
from devenv_api.core.config import Settings, get_settings
from devenv_api.models.common import JobOperation
from devenv_api.models.job import (
    ControlJobData,
    Job,
    JobOutcome,
    JobStatus,
    ProvisionJobData,
    RetryPolicy,
    job_key,
)

logger = logging.getLogger(__name__)


class JobNotActiveError(Exception):
    """Raised when completing or failing a job that is not reserved."""

    pass


@dataclass
class EnqueueResult:
    """Result of adding a job to a queue."""

    job: Job
    created: bool  # False when an outstanding job absorbed the request


@dataclass
class QueueCounts:
    """Snapshot of a queue's collections for operational inspection."""

    waiting: int
    delayed: int
    completed: int
    failed: int


class JobQueue:
    """A named queue with a retry policy on top of a QueueBroker.

    Example:
        ```python
        queue = JobQueue("vm-control", broker, RetryPolicy(max_attempts=2, backoff_seconds=2))
        queue.add("stop", {"environmentId": env_id}, job_id=f"stop-{env_id}")

        job = queue.reserve()
        try:
            ...
            queue.complete(job)
        except Exception as e:
            if queue.fail(job, str(e)) == JobOutcome.EXHAUSTED:
                ...
        ```
    """

    def __init__(
        self,
        name: str,
        broker: QueueBroker,
        policy: RetryPolicy,
        clock: Callable[[], float] = time.time,
        lease_seconds: float = 60.0,
    ) -> None:
        """Initialize the queue.

        Args:
            name: Queue name, used as the broker namespace
            broker: Storage backend
            policy: Retry and retention policy for every job
            clock: Source of unix time, replaceable in tests
            lease_seconds: How long a reserved job may go without renewal
                before another worker may take it over
        """
        self.name = name
        self.broker = broker
        self.policy = policy
        self.lease_seconds = lease_seconds
        self._clock = clock

    # A key is held for a moment without an outstanding record while a producer
    # writes its job or a worker finishes one; poll before treating it as orphaned.
    claim_retry_attempts = 50
    claim_retry_interval = 0.01

    def _claim(self, job_id: str) -> Job | None:
        """Claim a key, or return the outstanding job that holds it.

        Blocks for at most ``claim_retry_attempts * claim_retry_interval``
        seconds; async callers run it off the event loop.
        """
        for _ in range(self.claim_retry_attempts):
            if self.broker.claim(self.name, job_id):
                return None
            existing = self.broker.load(self.name, job_id)
            if existing is not None and existing.is_outstanding:
                return existing
            time.sleep(self.claim_retry_interval)

        logger.warning(f"Reclaiming orphaned key {job_id} on {self.name}")
        return None

    def add(self, name: str, data: dict[str, Any], job_id: str) -> EnqueueResult:
        """Add a job under a deterministic key.

        If a job with the same key is still waiting, delayed or active, the
        request is absorbed and the existing job is returned. A finished
        record under the key is replaced.

        Args:
            name: Operation name
            data: JSON-serializable payload
            job_id: Deterministic key

        Returns:
            EnqueueResult with the job and whether it was newly created
        """
        existing = self._claim(job_id)
        if existing is not None:
            logger.info(f"Job {job_id} already outstanding on {self.name}, request absorbed")
            return EnqueueResult(job=existing, created=False)

        self.broker.remove(self.name, job_id)
        job = Job(
            id=job_id,
            name=name,
            queue=self.name,
            data=data,
            status=JobStatus.WAITING,
            max_attempts=self.policy.max_attempts,
        )
        self.broker.save(job)
        self.broker.push_ready(self.name, job_id)
        logger.info(f"Queued {name} job {job_id} on {self.name}")
        return EnqueueResult(job=job, created=True)

    def _recover_stalled(self, now: float) -> None:
        """Put back active jobs whose worker stopped renewing the lease.

        The lost attempt is not counted: the job never reported an outcome.
        """
        for stalled_id in self.broker.pop_expired_leases(self.name, now):
            stalled = self.broker.load(self.name, stalled_id)
            if stalled is None or stalled.status != JobStatus.ACTIVE:
                continue
            stalled.status = JobStatus.WAITING
            stalled.attempts_made = max(stalled.attempts_made - 1, 0)
            stalled.lease_until = None
            stalled.stalled_count += 1
            self.broker.save(stalled)
            self.broker.push_ready(self.name, stalled_id)
            logger.warning(
                f"Job {stalled_id} on {self.name} stalled "
                f"({stalled.stalled_count} times), returned to the queue"
            )

    def reserve(self) -> Job | None:
        """Take the next ready job, promoting delayed jobs that are due.

        Active jobs whose lease ran out are returned to the queue first.

        Returns:
            The reserved job in ACTIVE status, or None if nothing is ready
        """
        now = self._clock()
        self._recover_stalled(now)
        for due_id in self.broker.pop_due(self.name, now):
            due = self.broker.load(self.name, due_id)
            if due is None:
                continue
            due.status = JobStatus.WAITING
            due.run_at = None
            self.broker.save(due)
            self.broker.push_ready(self.name, due_id)

        while True:
            job_id = self.broker.pop_ready(self.name)
            if job_id is None:
                return None
            job = self.broker.load(self.name, job_id)
            if job is None or job.status != JobStatus.WAITING:
                continue
            job.status = JobStatus.ACTIVE
            job.attempts_made += 1
            job.lease_until = now + self.lease_seconds
            self.broker.save(job)
            self.broker.lease(self.name, job.id, job.lease_until)
            logger.debug(
                f"Reserved job {job.id} on {self.name} "
                f"(attempt {job.attempts_made}/{job.max_attempts})"
            )
            return job

    def _require_active(self, job: Job) -> Job:
        current = self.broker.load(self.name, job.id)
        if current is None or current.status != JobStatus.ACTIVE:
            raise JobNotActiveError(f"Job {job.id} is not active on {self.name}")
        return current

    def renew(self, job: Job) -> None:
        """Extend the lease of an active job that is still being worked on.

        Raises:
            JobNotActiveError: If the job was settled or taken over meanwhile
        """
        current = self._require_active(job)
        current.lease_until = self._clock() + self.lease_seconds
        self.broker.save(current)
        self.broker.lease(self.name, current.id, current.lease_until)

    def _leave_active(self, job: Job) -> None:
        job.lease_until = None
        self.broker.drop_lease(self.name, job.id)

    def _finish(self, job: Job, status: JobStatus) -> None:
        self._leave_active(job)
        job.status = status
        job.run_at = None
        job.finished_at = datetime.utcnow()
        self.broker.save(job)
        keep = (
            self.policy.keep_completed
            if status == JobStatus.COMPLETED
            else self.policy.keep_failed
        )
        purged = self.broker.record_finished(
            self.name, status.value, job.id, self._clock(), keep
        )
        if purged:
            logger.debug(f"Purged {len(purged)} {status.value} job records from {self.name}")
        self.broker.release(self.name, job.id)

    def complete(self, job: Job, result: dict[str, Any] | None = None) -> Job:
        """Mark an active job completed and free its key."""
        current = self._require_active(job)
        current.result = result
        self._finish(current, JobStatus.COMPLETED)
        logger.info(f"Job {current.id} completed on {self.name}")
        return current

    def fail(self, job: Job, error: str) -> JobOutcome:
        """Report a failed attempt.

        Schedules a retry with exponential backoff while attempts remain.
        Otherwise the job fails for good and its key is freed.

        Returns:
            RETRY_SCHEDULED or EXHAUSTED
        """
        current = self._require_active(job)
        current.last_error = error

        if current.attempts_remaining > 0:
            delay = self.policy.backoff_for(current.attempts_made)
            self._leave_active(current)
            current.status = JobStatus.DELAYED
            current.run_at = self._clock() + delay
            self.broker.save(current)
            self.broker.schedule(self.name, current.id, current.run_at)
            logger.warning(
                f"Job {current.id} failed on {self.name} "
                f"(attempt {current.attempts_made}/{current.max_attempts}), "
                f"retrying in {delay:g}s: {error}"
            )
            return JobOutcome.RETRY_SCHEDULED

        self._finish(current, JobStatus.FAILED)
        logger.error(
            f"Job {current.id} failed on {self.name} after "
            f"{current.attempts_made} attempts: {error}"
        )
        return JobOutcome.EXHAUSTED

    def defer(self, job: Job, delay_seconds: float) -> Job:
        """Put an active job back without consuming an attempt."""
        current = self._require_active(job)
        current.attempts_made = max(current.attempts_made - 1, 0)
        self._leave_active(current)
        current.status = JobStatus.DELAYED
        current.run_at = self._clock() + delay_seconds
        self.broker.save(current)
        self.broker.schedule(self.name, current.id, current.run_at)
        logger.info(f"Deferred job {current.id} on {self.name} by {delay_seconds:g}s")
        return current

    def get_job(self, job_id: str) -> Job | None:
        """Get a job record by key (retained finished jobs included)."""
        return self.broker.load(self.name, job_id)

    def counts(self) -> QueueCounts:
        """Get collection sizes for inspection."""
        return QueueCounts(
            waiting=self.broker.count_ready(self.name),
            delayed=self.broker.count_delayed(self.name),
            completed=len(self.broker.finished_ids(self.name, "completed")),
            failed=len(self.broker.finished_ids(self.name, "failed")),
        )


class ProvisionQueue(JobQueue):
    """Queue for slow, resource-allocating provision jobs."""

    def enqueue_provision(self, data: ProvisionJobData) -> EnqueueResult:
        """Queue ``provision-<environment id>``."""
        return self.add(
            JobOperation.PROVISION.value,
            data.model_dump(mode="json", by_alias=True),
            job_id=job_key(JobOperation.PROVISION, data.environment_id),
        )


class ControlQueue(JobQueue):
    """Queue for fast start, stop and destroy jobs."""

    def enqueue(self, operation: JobOperation, environment_id: str) -> EnqueueResult:
        """Queue ``<operation>-<environment id>``."""
        if operation == JobOperation.PROVISION:
            raise ValueError("Provision jobs belong on the provision queue")
        data = ControlJobData(environmentId=environment_id)
        return self.add(
            operation.value,
            data.model_dump(mode="json", by_alias=True),
            job_id=job_key(operation, environment_id),
        )


def create_provision_queue(
    settings: Settings, broker: QueueBroker, clock: Callable[[], float] = time.time
) -> ProvisionQueue:
    """Build the provision queue from settings."""
    return ProvisionQueue(
        settings.provision_queue_name,
        broker,
        RetryPolicy(
            max_attempts=settings.provision_max_attempts,
            backoff_seconds=settings.provision_backoff_seconds,
            keep_completed=settings.provision_keep_completed,
            keep_failed=settings.provision_keep_failed,
        ),
        clock=clock,
        lease_seconds=settings.job_lease_seconds,
    )


def create_control_queue(
    settings: Settings, broker: QueueBroker, clock: Callable[[], float] = time.time
) -> ControlQueue:
    """Build the control queue from settings."""
    return ControlQueue(
        settings.control_queue_name,
        broker,
        RetryPolicy(
            max_attempts=settings.control_max_attempts,
            backoff_seconds=settings.control_backoff_seconds,
            keep_completed=settings.control_keep_completed,
            keep_failed=settings.control_keep_failed,
        ),
        clock=clock,
        lease_seconds=settings.job_lease_seconds,
    )


# Global queue instances
_provision_queue: ProvisionQueue | None = None
_control_queue: ControlQueue | None = None


def get_provision_queue() -> ProvisionQueue:
    """Get the global ProvisionQueue instance."""
    global _provision_queue
    if _provision_queue is None:
        _provision_queue = create_provision_queue(get_settings(), get_queue_broker())
    return _provision_queue


def get_control_queue() -> ControlQueue:
    """Get the global ControlQueue instance."""
    global _control_queue
    if _control_queue is None:
        _control_queue = create_control_queue(get_settings(), get_queue_broker())
    return _control_queue
