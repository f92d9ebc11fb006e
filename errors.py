# errors.py


class SchedulerError(Exception):
    """Base class for scheduler errors"""


class ValidationError(SchedulerError):
    """Submission rejected before anything was persisted"""


class StoreUnavailable(SchedulerError):
    """The job database could not be reached; safe to retry"""


class JobNotFound(SchedulerError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class TransientPublishError(SchedulerError):
    """Publishing failed but may succeed later (rate limits, timeouts)"""


class PermanentPublishError(SchedulerError):
    """Publishing failed and retrying will not help (bad credentials, deleted draft)"""


class LeaseExpired(SchedulerError):
    def __init__(self, job_id, worker_id):
        super().__init__(f"Worker {worker_id} no longer holds the lease on job {job_id}")
        self.job_id = job_id
        self.worker_id = worker_id
