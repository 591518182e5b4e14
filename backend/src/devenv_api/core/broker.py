"""Queue brokers: the storage and coordination layer behind job queues.

A broker only knows about job records, key claims and three kinds of
collections (ready, delayed and finished). Retry policy and job lifecycle
live in ``devenv_api.services.job_queue``; the broker is injected so tests can
swap Redis for the in-memory implementation.

Redis key layout (per queue):
    devenv:queue:<name>:job:<id>     JSON job record
    devenv:queue:<name>:claim:<id>   present while a job occupies its key
    devenv:queue:<name>:ready        list of job IDs ready to be reserved
    devenv:queue:<name>:delayed      sorted set of job IDs scored by run time
    devenv:queue:<name>:active       sorted set of reserved job IDs scored by lease expiry
    devenv:queue:<name>:completed    sorted set scored by finish time
    devenv:queue:<name>:failed       sorted set scored by finish time
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Literal

import redis

from devenv_api.core.config import Settings, get_settings
from devenv_api.models.job import Job

logger = logging.getLogger(__name__)

FinishedKind = Literal["completed", "failed"]


class QueueBroker(ABC):
    """Abstract storage backend shared by queue producers and workers."""

    @abstractmethod
    def claim(self, queue: str, job_id: str) -> bool:
        """Atomically take ownership of a job key.

        Returns:
            True if the key was free, False if another job holds it
        """

    @abstractmethod
    def release(self, queue: str, job_id: str) -> None:
        """Free a job key so a new job may be created under it."""

    @abstractmethod
    def save(self, job: Job) -> None:
        """Write a job record."""

    @abstractmethod
    def load(self, queue: str, job_id: str) -> Job | None:
        """Read a job record."""

    @abstractmethod
    def remove(self, queue: str, job_id: str) -> None:
        """Delete a job record and drop it from the finished collections."""

    @abstractmethod
    def push_ready(self, queue: str, job_id: str) -> None:
        """Append a job to the ready list."""

    @abstractmethod
    def pop_ready(self, queue: str) -> str | None:
        """Pop the oldest ready job ID."""

    @abstractmethod
    def schedule(self, queue: str, job_id: str, run_at: float) -> None:
        """Hold a job until ``run_at`` (unix time)."""

    @abstractmethod
    def pop_due(self, queue: str, now: float) -> list[str]:
        """Remove and return delayed job IDs whose run time has passed."""

    @abstractmethod
    def lease(self, queue: str, job_id: str, until: float) -> None:
        """Record (or renew) the lease of a reserved job."""

    @abstractmethod
    def drop_lease(self, queue: str, job_id: str) -> None:
        """Forget the lease of a job that left the active state."""

    @abstractmethod
    def pop_expired_leases(self, queue: str, now: float) -> list[str]:
        """Remove and return active job IDs whose lease has run out."""

    @abstractmethod
    def record_finished(
        self, queue: str, kind: FinishedKind, job_id: str, finished_at: float, keep: int
    ) -> list[str]:
        """Add a job to a finished collection and trim it to ``keep`` entries.

        Returns:
            IDs of the purged jobs (their records are deleted)
        """

    @abstractmethod
    def finished_ids(self, queue: str, kind: FinishedKind) -> list[str]:
        """IDs in a finished collection, oldest first."""

    @abstractmethod
    def count_ready(self, queue: str) -> int:
        """Number of ready jobs."""

    @abstractmethod
    def count_delayed(self, queue: str) -> int:
        """Number of delayed jobs."""

    def ping(self) -> bool:
        """Check the broker is reachable."""
        return True


class InMemoryQueueBroker(QueueBroker):
    """Single-process broker used in tests and local development."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._jobs: dict[tuple[str, str], str] = {}
        self._claims: set[tuple[str, str]] = set()
        self._ready: dict[str, deque[str]] = {}
        self._delayed: dict[str, dict[str, float]] = {}
        self._leases: dict[str, dict[str, float]] = {}
        self._finished: dict[tuple[str, FinishedKind], dict[str, float]] = {}

    def claim(self, queue: str, job_id: str) -> bool:
        with self._lock:
            if (queue, job_id) in self._claims:
                return False
            self._claims.add((queue, job_id))
            return True

    def release(self, queue: str, job_id: str) -> None:
        with self._lock:
            self._claims.discard((queue, job_id))

    def save(self, job: Job) -> None:
        with self._lock:
            self._jobs[(job.queue, job.id)] = job.model_dump_json(by_alias=True)

    def load(self, queue: str, job_id: str) -> Job | None:
        with self._lock:
            raw = self._jobs.get((queue, job_id))
            return Job.model_validate_json(raw) if raw is not None else None

    def remove(self, queue: str, job_id: str) -> None:
        with self._lock:
            self._jobs.pop((queue, job_id), None)
            for kind in ("completed", "failed"):
                self._finished.get((queue, kind), {}).pop(job_id, None)

    def push_ready(self, queue: str, job_id: str) -> None:
        with self._lock:
            self._ready.setdefault(queue, deque()).append(job_id)

    def pop_ready(self, queue: str) -> str | None:
        with self._lock:
            ready = self._ready.get(queue)
            return ready.popleft() if ready else None

    def schedule(self, queue: str, job_id: str, run_at: float) -> None:
        with self._lock:
            self._delayed.setdefault(queue, {})[job_id] = run_at

    def pop_due(self, queue: str, now: float) -> list[str]:
        with self._lock:
            delayed = self._delayed.get(queue, {})
            due = sorted(
                (job_id for job_id, run_at in delayed.items() if run_at <= now),
                key=lambda job_id: delayed[job_id],
            )
            for job_id in due:
                del delayed[job_id]
            return due

    def lease(self, queue: str, job_id: str, until: float) -> None:
        with self._lock:
            self._leases.setdefault(queue, {})[job_id] = until

    def drop_lease(self, queue: str, job_id: str) -> None:
        with self._lock:
            self._leases.get(queue, {}).pop(job_id, None)

    def pop_expired_leases(self, queue: str, now: float) -> list[str]:
        with self._lock:
            leases = self._leases.get(queue, {})
            expired = [job_id for job_id, until in leases.items() if until <= now]
            for job_id in expired:
                del leases[job_id]
            return expired

    def record_finished(
        self, queue: str, kind: FinishedKind, job_id: str, finished_at: float, keep: int
    ) -> list[str]:
        with self._lock:
            finished = self._finished.setdefault((queue, kind), {})
            finished[job_id] = finished_at
            ordered = sorted(finished, key=lambda i: finished[i])
            purged = ordered[: max(len(ordered) - keep, 0)]
            for old_id in purged:
                del finished[old_id]
                self._jobs.pop((queue, old_id), None)
            return purged

    def finished_ids(self, queue: str, kind: FinishedKind) -> list[str]:
        with self._lock:
            finished = self._finished.get((queue, kind), {})
            return sorted(finished, key=lambda i: finished[i])

    def count_ready(self, queue: str) -> int:
        with self._lock:
            return len(self._ready.get(queue, ()))

    def count_delayed(self, queue: str) -> int:
        with self._lock:
            return len(self._delayed.get(queue, {}))


class RedisQueueBroker(QueueBroker):
    """Redis-backed broker shared by the API and any number of workers."""

    def __init__(self, client: redis.Redis, prefix: str = "devenv:queue") -> None:
        """Initialize the broker.

        Args:
            client: Redis client created with ``decode_responses=True``
            prefix: Namespace for every key written by the broker
        """
        self.client = client
        self.prefix = prefix

    def _key(self, queue: str, *parts: str) -> str:
        return ":".join([self.prefix, queue, *parts])

    def claim(self, queue: str, job_id: str) -> bool:
        return bool(self.client.set(self._key(queue, "claim", job_id), "1", nx=True))

    def release(self, queue: str, job_id: str) -> None:
        self.client.delete(self._key(queue, "claim", job_id))

    def save(self, job: Job) -> None:
        self.client.set(self._key(job.queue, "job", job.id), job.model_dump_json(by_alias=True))

    def load(self, queue: str, job_id: str) -> Job | None:
        raw = self.client.get(self._key(queue, "job", job_id))
        return Job.model_validate_json(raw) if raw is not None else None

    def remove(self, queue: str, job_id: str) -> None:
        pipe = self.client.pipeline()
        pipe.delete(self._key(queue, "job", job_id))
        pipe.zrem(self._key(queue, "completed"), job_id)
        pipe.zrem(self._key(queue, "failed"), job_id)
        pipe.execute()

    def push_ready(self, queue: str, job_id: str) -> None:
        self.client.rpush(self._key(queue, "ready"), job_id)

    def pop_ready(self, queue: str) -> str | None:
        return self.client.lpop(self._key(queue, "ready"))

    def schedule(self, queue: str, job_id: str, run_at: float) -> None:
        self.client.zadd(self._key(queue, "delayed"), {job_id: run_at})

    def pop_due(self, queue: str, now: float) -> list[str]:
        key = self._key(queue, "delayed")
        due: list[str] = []
        for job_id in self.client.zrangebyscore(key, "-inf", now):
            # ZREM succeeds for exactly one caller when workers race
            if self.client.zrem(key, job_id):
                due.append(job_id)
        return due

    def lease(self, queue: str, job_id: str, until: float) -> None:
        self.client.zadd(self._key(queue, "active"), {job_id: until})

    def drop_lease(self, queue: str, job_id: str) -> None:
        self.client.zrem(self._key(queue, "active"), job_id)

    def pop_expired_leases(self, queue: str, now: float) -> list[str]:
        key = self._key(queue, "active")
        return [
            job_id
            for job_id in self.client.zrangebyscore(key, "-inf", now)
            if self.client.zrem(key, job_id)
        ]

    def record_finished(
        self, queue: str, kind: FinishedKind, job_id: str, finished_at: float, keep: int
    ) -> list[str]:
        key = self._key(queue, kind)
        self.client.zadd(key, {job_id: finished_at})
        overflow = self.client.zcard(key) - keep
        if overflow <= 0:
            return []
        purged: list[str] = self.client.zrange(key, 0, overflow - 1)
        pipe = self.client.pipeline()
        pipe.zremrangebyrank(key, 0, overflow - 1)
        for old_id in purged:
            pipe.delete(self._key(queue, "job", old_id))
        pipe.execute()
        return purged

    def finished_ids(self, queue: str, kind: FinishedKind) -> list[str]:
        return self.client.zrange(self._key(queue, kind), 0, -1)

    def count_ready(self, queue: str) -> int:
        return self.client.llen(self._key(queue, "ready"))

    def count_delayed(self, queue: str) -> int:
        return self.client.zcard(self._key(queue, "delayed"))

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.warning("Queue broker ping failed: %s", e)
            return False


# Global Redis client and broker instances
_redis_client: redis.Redis | None = None
_queue_broker: QueueBroker | None = None


def get_redis_client(settings: Settings | None = None) -> redis.Redis:
    """Get the shared synchronous Redis client."""
    global _redis_client
    if _redis_client is None:
        settings = settings or get_settings()
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
    return _redis_client


def get_queue_broker() -> QueueBroker:
    """Get the global QueueBroker selected by ``settings.queue_backend``."""
    global _queue_broker
    if _queue_broker is None:
        settings = get_settings()
        if settings.queue_backend == "memory":
            _queue_broker = InMemoryQueueBroker()
        else:
            _queue_broker = RedisQueueBroker(get_redis_client(settings))
    return _queue_broker


def reset_brokers() -> None:
    """Reset the global broker and Redis client (for testing)."""
    global _redis_client, _queue_broker
    _redis_client = None
    _queue_broker = None
