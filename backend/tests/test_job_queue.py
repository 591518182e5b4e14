"""Tests for the provision and control job queues."""

import threading
from unittest.mock import MagicMock

import pytest

from devenv_api.core.broker import InMemoryQueueBroker, RedisQueueBroker
from devenv_api.models.common import JobOperation
from devenv_api.models.job import Job, JobOutcome, JobStatus, ProvisionJobData, RetryPolicy, job_key
from devenv_api.services.job_queue import (
    ControlQueue,
    JobNotActiveError,
    JobQueue,
    ProvisionQueue,
)


def _provision_data(env_id: str = "env-1") -> ProvisionJobData:
    return ProvisionJobData(
        environmentId=env_id, userId="user-1", vcpus=2, memoryMb=4096, diskGb=10
    )


class TestRetryPolicy:
    """Tests for exponential backoff."""

    def test_provision_schedule(self):
        policy = RetryPolicy(max_attempts=4, backoff_seconds=5)
        assert [policy.backoff_for(n) for n in (1, 2, 3)] == [5, 10, 20]

    def test_control_schedule(self):
        policy = RetryPolicy(max_attempts=2, backoff_seconds=2)
        assert policy.backoff_for(1) == 2

    def test_job_key(self):
        assert job_key(JobOperation.PROVISION, "abc") == "provision-abc"
        assert job_key(JobOperation.DESTROY, "abc") == "destroy-abc"


class TestQueueConfiguration:
    def test_queues_use_configured_policies(
        self, provision_queue: ProvisionQueue, control_queue: ControlQueue
    ):
        assert provision_queue.name == "vm-provision"
        assert provision_queue.policy.max_attempts == 3
        assert provision_queue.policy.backoff_seconds == 5.0
        assert control_queue.name == "vm-control"
        assert control_queue.policy.max_attempts == 2
        assert control_queue.policy.backoff_seconds == 2.0


class TestEnqueue:
    """Tests for adding jobs under deterministic keys."""

    def test_enqueue_provision(self, provision_queue: ProvisionQueue):
        result = provision_queue.enqueue_provision(_provision_data())

        assert result.created is True
        assert result.job.id == "provision-env-1"
        assert result.job.name == "provision"
        assert result.job.status == JobStatus.WAITING
        assert result.job.max_attempts == 3
        assert result.job.data["environmentId"] == "env-1"
        assert result.job.data["memoryMb"] == 4096

    def test_enqueue_control(self, control_queue: ControlQueue):
        result = control_queue.enqueue(JobOperation.STOP, "env-1")

        assert result.job.id == "stop-env-1"
        assert result.job.data == {"environmentId": "env-1"}

    def test_control_queue_rejects_provision(self, control_queue: ControlQueue):
        with pytest.raises(ValueError):
            control_queue.enqueue(JobOperation.PROVISION, "env-1")

    def test_duplicate_request_is_absorbed(self, control_queue: ControlQueue):
        """Test that a second request for an outstanding key returns the same job."""
        first = control_queue.enqueue(JobOperation.DESTROY, "env-1")
        second = control_queue.enqueue(JobOperation.DESTROY, "env-1")

        assert second.created is False
        assert second.job.id == first.job.id
        assert control_queue.counts().waiting == 1

    def test_duplicate_while_active_is_absorbed(self, control_queue: ControlQueue):
        control_queue.enqueue(JobOperation.DESTROY, "env-1")
        control_queue.reserve()

        again = control_queue.enqueue(JobOperation.DESTROY, "env-1")
        assert again.created is False
        assert again.job.status == JobStatus.ACTIVE
        assert control_queue.reserve() is None

    def test_different_operations_do_not_collide(self, control_queue: ControlQueue):
        control_queue.enqueue(JobOperation.STOP, "env-1")
        result = control_queue.enqueue(JobOperation.DESTROY, "env-1")

        assert result.created is True
        assert control_queue.counts().waiting == 2

    def test_key_is_free_after_completion(self, control_queue: ControlQueue):
        control_queue.enqueue(JobOperation.STOP, "env-1")
        control_queue.complete(control_queue.reserve())

        result = control_queue.enqueue(JobOperation.STOP, "env-1")
        assert result.created is True
        assert result.job.status == JobStatus.WAITING
        assert result.job.attempts_made == 0

    def test_concurrent_adds_create_one_job(self, control_queue: ControlQueue):
        """Test that racing producers on one key yield exactly one job."""
        results = []
        lock = threading.Lock()

        def add():
            result = control_queue.enqueue(JobOperation.DESTROY, "env-1")
            with lock:
                results.append(result)

        threads = [threading.Thread(target=add) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(1 for r in results if r.created) == 1
        assert {r.job.id for r in results} == {"destroy-env-1"}
        assert control_queue.counts().waiting == 1


class TestReserve:
    def test_reserve_empty(self, control_queue: ControlQueue):
        assert control_queue.reserve() is None

    def test_reserve_fifo_and_counts_attempts(self, control_queue: ControlQueue):
        control_queue.enqueue(JobOperation.STOP, "env-1")
        control_queue.enqueue(JobOperation.STOP, "env-2")

        job = control_queue.reserve()
        assert job.id == "stop-env-1"
        assert job.status == JobStatus.ACTIVE
        assert job.attempts_made == 1
        assert control_queue.reserve().id == "stop-env-2"

    def test_complete_requires_active(self, control_queue: ControlQueue):
        result = control_queue.enqueue(JobOperation.STOP, "env-1")
        with pytest.raises(JobNotActiveError):
            control_queue.complete(result.job)

    def test_complete_stores_result(self, control_queue: ControlQueue):
        control_queue.enqueue(JobOperation.STOP, "env-1")
        control_queue.complete(control_queue.reserve(), {"state": "stopped"})

        job = control_queue.get_job("stop-env-1")
        assert job.status == JobStatus.COMPLETED
        assert job.result == {"state": "stopped"}
        assert job.finished_at is not None


class TestRetries:
    """Tests for failure handling and backoff."""

    def test_backoff_schedule_with_fake_clock(self, broker: InMemoryQueueBroker, clock):
        """Test retries wait 5s, 10s, 20s and then the job fails for good."""
        queue = JobQueue(
            "vm-provision", broker, RetryPolicy(max_attempts=4, backoff_seconds=5), clock=clock
        )
        queue.add("provision", {}, job_id="provision-env-1")

        for expected_delay in (5, 10, 20):
            job = queue.reserve()
            assert queue.fail(job, "boom") == JobOutcome.RETRY_SCHEDULED

            delayed = queue.get_job(job.id)
            assert delayed.status == JobStatus.DELAYED
            assert delayed.run_at == clock() + expected_delay

            clock.advance(expected_delay - 0.5)
            assert queue.reserve() is None
            clock.advance(0.5)

        job = queue.reserve()
        assert job.attempts_made == 4
        assert queue.fail(job, "still broken") == JobOutcome.EXHAUSTED

        failed = queue.get_job(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.last_error == "still broken"
        assert queue.counts().failed == 1

    def test_provision_queue_exhausts_after_three_attempts(
        self, provision_queue: ProvisionQueue, clock
    ):
        provision_queue.enqueue_provision(_provision_data())

        outcomes = []
        for _ in range(3):
            job = provision_queue.reserve()
            outcomes.append(provision_queue.fail(job, "quota exceeded"))
            clock.advance(60)

        assert outcomes == [
            JobOutcome.RETRY_SCHEDULED,
            JobOutcome.RETRY_SCHEDULED,
            JobOutcome.EXHAUSTED,
        ]
        assert provision_queue.reserve() is None

    def test_key_is_free_after_exhaustion(self, control_queue: ControlQueue, clock):
        control_queue.enqueue(JobOperation.START, "env-1")
        control_queue.fail(control_queue.reserve(), "first")
        clock.advance(2)
        control_queue.fail(control_queue.reserve(), "second")

        result = control_queue.enqueue(JobOperation.START, "env-1")
        assert result.created is True

    def test_duplicate_while_delayed_is_absorbed(
        self, control_queue: ControlQueue, clock
    ):
        control_queue.enqueue(JobOperation.START, "env-1")
        control_queue.fail(control_queue.reserve(), "first")

        again = control_queue.enqueue(JobOperation.START, "env-1")
        assert again.created is False
        assert again.job.status == JobStatus.DELAYED

    def test_fail_requires_active(self, control_queue: ControlQueue):
        result = control_queue.enqueue(JobOperation.STOP, "env-1")
        with pytest.raises(JobNotActiveError):
            control_queue.fail(result.job, "nope")


class TestDefer:
    def test_defer_does_not_consume_attempt(self, control_queue: ControlQueue, clock):
        control_queue.enqueue(JobOperation.DESTROY, "env-1")
        job = control_queue.reserve()

        deferred = control_queue.defer(job, 5)
        assert deferred.status == JobStatus.DELAYED
        assert deferred.attempts_made == 0

        assert control_queue.reserve() is None
        clock.advance(5)
        job = control_queue.reserve()
        assert job.attempts_made == 1
        assert job.attempts_remaining == 1


class TestRetention:
    def test_completed_jobs_trimmed(self, broker: InMemoryQueueBroker, clock):
        queue = JobQueue(
            "vm-control", broker, RetryPolicy(max_attempts=1, keep_completed=2), clock=clock
        )
        for i in range(3):
            queue.add("stop", {}, job_id=f"stop-env-{i}")
            queue.complete(queue.reserve())
            clock.advance(1)

        assert queue.counts().completed == 2
        assert queue.get_job("stop-env-0") is None
        assert queue.get_job("stop-env-2") is not None

    def test_failed_jobs_trimmed(self, broker: InMemoryQueueBroker, clock):
        queue = JobQueue(
            "vm-control", broker, RetryPolicy(max_attempts=1, keep_failed=1), clock=clock
        )
        for i in range(2):
            queue.add("stop", {}, job_id=f"stop-env-{i}")
            queue.fail(queue.reserve(), "boom")
            clock.advance(1)

        assert queue.counts().failed == 1
        assert queue.get_job("stop-env-0") is None


class TestLeases:
    """Tests for recovering jobs whose worker went away."""

    def test_reserve_sets_lease(self, control_queue: ControlQueue, clock):
        control_queue.enqueue(JobOperation.STOP, "env-1")
        job = control_queue.reserve()

        assert job.lease_until == clock() + control_queue.lease_seconds

    def test_stalled_job_is_requeued(self, control_queue: ControlQueue, clock):
        control_queue.enqueue(JobOperation.STOP, "env-1")
        first = control_queue.reserve()

        clock.advance(control_queue.lease_seconds - 1)
        assert control_queue.reserve() is None

        clock.advance(2)
        again = control_queue.reserve()
        assert again.id == first.id
        assert again.attempts_made == 1  # the lost attempt is not counted
        assert again.stalled_count == 1

    def test_stalled_job_still_absorbs_duplicates(self, control_queue: ControlQueue, clock):
        control_queue.enqueue(JobOperation.STOP, "env-1")
        control_queue.reserve()
        clock.advance(control_queue.lease_seconds + 1)

        result = control_queue.enqueue(JobOperation.STOP, "env-1")
        assert result.created is False
        assert control_queue.reserve().id == "stop-env-1"

    def test_renew_extends_lease(self, control_queue: ControlQueue, clock):
        control_queue.enqueue(JobOperation.STOP, "env-1")
        job = control_queue.reserve()

        clock.advance(control_queue.lease_seconds - 1)
        control_queue.renew(job)
        clock.advance(control_queue.lease_seconds - 1)

        assert control_queue.reserve() is None
        assert control_queue.get_job(job.id).status == JobStatus.ACTIVE

    def test_settled_jobs_are_not_recovered(self, control_queue: ControlQueue, clock):
        control_queue.enqueue(JobOperation.STOP, "env-1")
        job = control_queue.reserve()
        control_queue.complete(job)

        clock.advance(control_queue.lease_seconds * 2)
        assert control_queue.reserve() is None
        assert control_queue.get_job(job.id).status == JobStatus.COMPLETED

        with pytest.raises(JobNotActiveError):
            control_queue.renew(job)


class TestRedisQueueBroker:
    """Tests for the Redis broker with a mocked client."""

    @pytest.fixture
    def client(self) -> MagicMock:
        return MagicMock()

    @pytest.fixture
    def redis_broker(self, client: MagicMock) -> RedisQueueBroker:
        return RedisQueueBroker(client)

    def test_claim_uses_set_nx(self, redis_broker: RedisQueueBroker, client: MagicMock):
        client.set.return_value = True
        assert redis_broker.claim("vm-control", "stop-env-1") is True
        client.set.assert_called_once_with(
            "devenv:queue:vm-control:claim:stop-env-1", "1", nx=True
        )

        client.set.return_value = None
        assert redis_broker.claim("vm-control", "stop-env-1") is False

    def test_save_and_load_round_trip(self, redis_broker: RedisQueueBroker, client: MagicMock):
        job = Job(id="stop-env-1", name="stop", queue="vm-control", maxAttempts=2)
        redis_broker.save(job)

        key, raw = client.set.call_args.args
        assert key == "devenv:queue:vm-control:job:stop-env-1"

        client.get.return_value = raw
        loaded = redis_broker.load("vm-control", "stop-env-1")
        assert loaded.id == "stop-env-1"
        assert loaded.max_attempts == 2

    def test_load_missing(self, redis_broker: RedisQueueBroker, client: MagicMock):
        client.get.return_value = None
        assert redis_broker.load("vm-control", "missing") is None

    def test_pop_due_only_returns_won_races(
        self, redis_broker: RedisQueueBroker, client: MagicMock
    ):
        client.zrangebyscore.return_value = ["a", "b"]
        client.zrem.side_effect = [1, 0]

        assert redis_broker.pop_due("vm-control", 100.0) == ["a"]

    def test_leases_use_sorted_set(self, redis_broker: RedisQueueBroker, client: MagicMock):
        redis_broker.lease("vm-control", "stop-env-1", 160.0)
        client.zadd.assert_called_once_with(
            "devenv:queue:vm-control:active", {"stop-env-1": 160.0}
        )

        client.zrangebyscore.return_value = ["stop-env-1", "start-env-2"]
        client.zrem.side_effect = [0, 1]
        assert redis_broker.pop_expired_leases("vm-control", 200.0) == ["start-env-2"]

    def test_record_finished_trims(self, redis_broker: RedisQueueBroker, client: MagicMock):
        client.zcard.return_value = 3
        client.zrange.return_value = ["old"]
        pipe = client.pipeline.return_value

        purged = redis_broker.record_finished("vm-control", "completed", "new", 10.0, keep=2)

        assert purged == ["old"]
        client.zadd.assert_called_once_with("devenv:queue:vm-control:completed", {"new": 10.0})
        pipe.zremrangebyrank.assert_called_once_with("devenv:queue:vm-control:completed", 0, 0)
        pipe.delete.assert_called_once_with("devenv:queue:vm-control:job:old")
        pipe.execute.assert_called_once()

    def test_record_finished_within_limit(
        self, redis_broker: RedisQueueBroker, client: MagicMock
    ):
        client.zcard.return_value = 1
        assert redis_broker.record_finished("vm-control", "failed", "x", 1.0, keep=5) == []
        client.pipeline.assert_not_called()

    def test_ping_failure(self, redis_broker: RedisQueueBroker, client: MagicMock):
        import redis

        client.ping.side_effect = redis.ConnectionError("down")
        assert redis_broker.ping() is False
