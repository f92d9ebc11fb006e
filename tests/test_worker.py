"""
Tests for worker.py - executing due jobs and recording outcomes.
"""

import threading
import time
from datetime import timedelta

import pytest

from errors import PermanentPublishError, TransientPublishError
from models import CANCELLED, FAILED, PENDING, RUNNING, SUCCEEDED, to_iso
from publisher import Publisher
from worker import PublishTimeout, Worker, WorkerPool, call_with_timeout


class ScriptedPublisher(Publisher):
    """Raises the queued exceptions in order, then succeeds."""

    def __init__(self, *outcomes, side_effect=None):
        self.outcomes = list(outcomes)
        self.side_effect = side_effect
        self.calls = []
        self._lock = threading.Lock()

    def publish(self, draft_reference):
        with self._lock:
            self.calls.append(draft_reference)
            outcome = self.outcomes.pop(0) if self.outcomes else None
        if self.side_effect:
            self.side_effect(draft_reference)
        if outcome is not None:
            raise outcome


class BlockingPublisher(Publisher):

    def __init__(self):
        self.release = threading.Event()
        self.started = threading.Event()

    def publish(self, draft_reference):
        self.started.set()
        self.release.wait(5)


@pytest.fixture
def make_worker(store, settings):
    def _make(publisher, **overrides):
        for key, value in overrides.items():
            setattr(settings, key, value)
        return Worker(store, publisher, settings, worker_id="w-test")
    return _make


class TestScenario:

    def test_sample_job_publishes_when_due(self, submit, store, clock, make_worker):
        publisher = ScriptedPublisher()
        worker = make_worker(publisher)
        job_id = submit()["jobId"]

        assert worker.run_once() is False
        assert publisher.calls == []

        clock.advance(minutes=1)
        assert worker.run_once() is True

        assert publisher.calls == ["d1"]
        job = store.get(job_id)
        assert job.status == SUCCEEDED
        assert job.last_error is None


class TestRetries:

    def test_transient_error_retried_with_backoff(self, submit, store, clock, make_worker):
        publisher = ScriptedPublisher(TransientPublishError("429 rate limited"))
        worker = make_worker(publisher)
        job_id = submit()["jobId"]
        clock.advance(minutes=1)

        worker.run_once()
        job = store.get(job_id)
        assert job.status == PENDING
        assert job.attempts == 1
        assert job.last_error == "429 rate limited"
        assert job.next_run_at == to_iso(clock() + timedelta(seconds=2))

        assert worker.run_once() is False
        clock.advance(seconds=2)
        assert worker.run_once() is True
        assert store.get(job_id).status == SUCCEEDED
        assert publisher.calls == ["d1", "d1"]

    def test_transient_errors_settle_into_failed_after_retry_limit(self, submit, store, clock, make_worker):
        publisher = ScriptedPublisher(*[TransientPublishError("503") for _ in range(5)])
        worker = make_worker(publisher, max_retries=2)
        job_id = submit()["jobId"]
        clock.advance(minutes=1)

        for _ in range(3):
            assert worker.run_once() is True
            clock.advance(minutes=5)

        job = store.get(job_id)
        assert job.status == FAILED
        assert "gave up after 3 attempts" in job.last_error
        assert len(publisher.calls) == 3
        assert worker.run_once() is False

    def test_backoff_is_bounded(self, submit, store, clock, make_worker):
        publisher = ScriptedPublisher(*[TransientPublishError("503") for _ in range(3)])
        worker = make_worker(publisher, backoff_base=10, max_backoff_seconds=60, max_retries=5)
        job_id = submit()["jobId"]
        clock.advance(minutes=1)

        worker.run_once()
        assert store.get(job_id).next_run_at == to_iso(clock() + timedelta(seconds=10))
        clock.advance(seconds=10)
        worker.run_once()
        assert store.get(job_id).next_run_at == to_iso(clock() + timedelta(seconds=60))

    def test_permanent_error_fails_without_retry(self, submit, store, clock, make_worker):
        publisher = ScriptedPublisher(PermanentPublishError("invalid credentials"))
        worker = make_worker(publisher)
        job_id = submit()["jobId"]
        clock.advance(minutes=1)

        worker.run_once()

        job = store.get(job_id)
        assert job.status == FAILED
        assert job.attempts == 0
        assert "invalid credentials" in job.last_error
        assert publisher.calls == ["d1"]

    def test_unexpected_exception_fails_job(self, submit, store, clock, make_worker):
        worker = make_worker(ScriptedPublisher(KeyError("token")))
        job_id = submit()["jobId"]
        clock.advance(minutes=1)

        worker.run_once()

        job = store.get(job_id)
        assert job.status == FAILED
        assert job.last_error.startswith("KeyError")

    def test_publish_timeout_counts_as_transient(self, submit, store, clock, make_worker):
        publisher = BlockingPublisher()
        worker = make_worker(publisher, publish_timeout_seconds=0.05)
        job_id = submit()["jobId"]
        clock.advance(minutes=1)

        worker.run_once()
        publisher.release.set()

        job = store.get(job_id)
        assert job.status == PENDING
        assert job.attempts == 1
        assert "did not return" in job.last_error


class TestRecurring:

    def test_recurring_job_rearms_daily_and_never_terminates(self, submit, store, clock, make_worker):
        publisher = ScriptedPublisher()
        worker = make_worker(publisher)
        job_id = submit(repeat_rule="every 1 day")["jobId"]
        clock.advance(minutes=1)

        worker.run_once()
        job = store.get(job_id)
        assert job.status == PENDING
        assert job.scheduled_at_utc == "2025-01-02T00:00:00.000000Z"

        assert worker.run_once() is False
        clock.advance(days=1)
        worker.run_once()
        job = store.get(job_id)
        assert job.status == PENDING
        assert job.scheduled_at_utc == "2025-01-03T00:00:00.000000Z"
        assert job.run_count == 2

    def test_failed_occurrence_does_not_cancel_series(self, submit, store, clock, make_worker):
        worker = make_worker(ScriptedPublisher(PermanentPublishError("draft deleted")))
        job_id = submit(repeat_rule="every 1 day")["jobId"]
        clock.advance(minutes=1)

        worker.run_once()

        job = store.get(job_id)
        assert job.status == PENDING
        assert job.last_error == "permanent: draft deleted"
        assert job.scheduled_at_utc == "2025-01-02T00:00:00.000000Z"


class TestLeases:

    def test_cancel_during_publish_wins(self, submit, store, clock, make_worker):
        job_id = submit(repeat_rule="every 1 day")["jobId"]
        worker = make_worker(ScriptedPublisher(side_effect=lambda ref: store.cancel(job_id)))
        clock.advance(minutes=1)

        worker.run_once()

        assert store.get(job_id).status == CANCELLED

    def test_crashed_worker_job_is_recovered(self, submit, store, clock, make_worker, settings):
        job_id = submit()["jobId"]
        clock.advance(minutes=1)
        store.lease(job_id, "w-crashed", lease_seconds=settings.lease_seconds)

        worker = make_worker(ScriptedPublisher())
        assert worker.run_once() is False

        clock.advance(seconds=settings.lease_seconds + 1)
        assert worker.run_once() is True
        assert store.get(job_id).status == SUCCEEDED

    def test_lost_lease_is_not_fatal(self, submit, store, clock, make_worker):
        job_id = submit()["jobId"]

        def steal(ref):
            clock.advance(minutes=5)
            store.lease(job_id, "w-other")

        worker = make_worker(ScriptedPublisher(side_effect=steal))
        clock.advance(minutes=1)

        assert worker.run_once() is True

        job = store.get(job_id)
        assert job.status == RUNNING
        assert job.worker_id == "w-other"


class TestCallWithTimeout:

    def test_returns_result(self):
        assert call_with_timeout(lambda a, b: a + b, (1, 2), timeout=1) == 3

    def test_reraises_errors(self):
        with pytest.raises(PermanentPublishError):
            call_with_timeout(self._raise, (), timeout=1)

    def test_times_out(self):
        done = threading.Event()
        with pytest.raises(PublishTimeout):
            call_with_timeout(done.wait, (2,), timeout=0.05)
        done.set()

    @staticmethod
    def _raise():
        raise PermanentPublishError("nope")


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestWorkerPool:

    def test_pool_publishes_each_job_once(self, gate, store, clock, settings):
        publisher = ScriptedPublisher()
        ids = [gate.submit(f"d{i}", "2025-01-01T00:00:00Z")["jobId"] for i in range(6)]
        clock.advance(minutes=1)

        with WorkerPool(store, publisher, settings, count=3) as pool:
            assert len(pool.threads) == 3
            assert wait_for(lambda: store.counts_by_status()[SUCCEEDED] == 6)

        assert sorted(publisher.calls) == sorted(f"d{i}" for i in range(6))
        assert all(store.get(i).status == SUCCEEDED for i in ids)
        assert not any(t.is_alive() for t in pool.threads)

    def test_shutdown_releases_stuck_leases(self, submit, store, clock, settings):
        publisher = BlockingPublisher()
        job_id = submit()["jobId"]
        clock.advance(minutes=1)

        pool = WorkerPool(store, publisher, settings, count=1).start()
        assert publisher.started.wait(5)
        released = pool.shutdown(timeout=0.05)

        assert released == [job_id]
        assert store.get(job_id).status == PENDING

        publisher.release.set()
        for t in pool.threads:
            t.join(timeout=5)
