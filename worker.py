# worker.py
import logging
import threading
import time
import uuid
from datetime import timedelta

from errors import LeaseExpired, PermanentPublishError, StoreUnavailable, TransientPublishError
from models import FAILED, SUCCEEDED

logger = logging.getLogger(__name__)


class PublishTimeout(TransientPublishError):
    pass


def call_with_timeout(func, args=(), timeout=None):
    """Run func in a daemon thread and give up waiting after `timeout` seconds"""
    if not timeout:
        return func(*args)
    outcome = {}

    def target():
        try:
            outcome["result"] = func(*args)
        except BaseException as e:
            outcome["error"] = e

    t = threading.Thread(target=target, name="publish-call", daemon=True)
    t.start()
    t.join(timeout)
    if t.is_alive():
        raise PublishTimeout(f"publish did not return within {timeout}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("result")


class Worker:
    def __init__(self, store, publisher, settings, worker_id=None, stop_event=None):
        self.store = store
        self.publisher = publisher
        self.settings = settings
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.stop_event = stop_event  # threading.Event() shared by the pool

    def run(self):
        while not (self.stop_event and self.stop_event.is_set()):
            try:
                processed = self.run_once()
            except StoreUnavailable as e:
                logger.error("%s: job store unavailable: %s", self.worker_id, e)
                processed = False
            except Exception:
                logger.exception("%s: unexpected error, continuing", self.worker_id)
                processed = False
            if not processed:
                self._sleep(self.settings.poll_interval)
        logger.info("%s stopped", self.worker_id)

    def _sleep(self, seconds):
        if self.stop_event:
            self.stop_event.wait(seconds)
        else:
            time.sleep(seconds)

    def run_once(self):
        """Recover expired leases, then lease and execute one due job. Returns True if a job ran."""
        self.store.release_expired()
        job = self.store.lease_next(self.worker_id, self.settings.lease_seconds)
        if job is None:
            return False
        self._process_job(job)
        return True

    def _process_job(self, job):
        try:
            call_with_timeout(self.publisher.publish, (job.draft_reference,), self.settings.publish_timeout_seconds)
        except TransientPublishError as e:
            self._handle_transient(job, e)
        except PermanentPublishError as e:
            self._finish(job, FAILED, f"permanent: {e}")
        except Exception as e:
            logger.exception("%s: publish of job %s raised unexpectedly", self.worker_id, job.id)
            self._finish(job, FAILED, f"{type(e).__name__}: {e}")
        else:
            self._finish(job, SUCCEEDED)

    def _handle_transient(self, job, error):
        # job.attempts counts the failures before this one
        if job.attempts >= job.max_retries:
            self._finish(job, FAILED, f"gave up after {job.attempts + 1} attempts: {error}")
            return
        delay = min(self.settings.backoff_base ** (job.attempts + 1), self.settings.max_backoff_seconds)
        retry_at = self.store.clock() + timedelta(seconds=delay)
        try:
            self.store.retry_later(job.id, self.worker_id, str(error), retry_at)
        except LeaseExpired as e:
            logger.warning("%s", e)

    def _finish(self, job, outcome, error=None):
        try:
            self.store.complete(job.id, self.worker_id, outcome, error)
        except LeaseExpired as e:
            logger.warning("%s", e)


class WorkerPool:
    """
    A fixed set of worker threads sharing one store.
    Leaving the `with` block stops the loops, waits for in-flight jobs,
    and hands back any lease a stuck worker still holds.
    """

    def __init__(self, store, publisher, settings, count=None):
        self.store = store
        self.publisher = publisher
        self.settings = settings
        self.count = count or settings.worker_count
        self.stop_event = threading.Event()
        self.workers = []
        self.threads = []

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()

    def start(self):
        for i in range(self.count):
            w = Worker(self.store, self.publisher, self.settings, stop_event=self.stop_event)
            t = threading.Thread(target=w.run, name=f"worker-thread-{i+1}", daemon=True)
            self.workers.append(w)
            self.threads.append(t)
            logger.info("Starting %s (lease=%ss, backoff_base=%s, poll=%ss)", w.worker_id,
                        self.settings.lease_seconds, self.settings.backoff_base, self.settings.poll_interval)
            t.start()
        return self

    def shutdown(self, timeout=5.0):
        self.stop_event.set()
        for t in self.threads:
            t.join(timeout=timeout)
        stuck = [t.name for t in self.threads if t.is_alive()]
        if stuck:
            logger.warning("Workers still busy after %.1fs: %s", timeout, ", ".join(stuck))
        released = self.store.release_worker_leases(w.worker_id for w in self.workers)
        logger.info("Worker pool stopped (%d lease(s) released)", len(released))
        return released
