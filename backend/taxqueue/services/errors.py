"""Typed outcomes of the job queue.

Queue-management callers get the JobQueueError family; handlers raise the
handler-side errors to steer the retry decision.
"""


class JobQueueError(Exception):
    """Base class for errors surfaced by the job queue."""

    code = "JOB_QUEUE_ERROR"

    def __init__(self, message: str, job_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.job_id = job_id


class JobNotFoundError(JobQueueError):
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found", job_id)


class InvalidTransitionError(JobQueueError):
    code = "INVALID_TRANSITION"

    def __init__(self, job_id: str, current: str, target: str, message: str | None = None):
        super().__init__(
            message or f"Cannot move job {job_id} from '{current}' to '{target}'", job_id
        )
        self.current = current
        self.target = target


class RetryExhaustedError(JobQueueError):
    code = "RETRY_EXHAUSTED"

    def __init__(self, job_id: str, retry_count: int, max_retries: int):
        super().__init__(
            f"Job {job_id} already used {retry_count}/{max_retries} retries", job_id
        )
        self.retry_count = retry_count
        self.max_retries = max_retries


class UnsupportedJobTypeError(JobQueueError):
    code = "UNSUPPORTED_JOB_TYPE"

    def __init__(self, job_type: str, job_id: str | None = None):
        super().__init__(f"Unsupported job type: {job_type}", job_id)
        self.job_type = job_type


class JobPersistenceError(JobQueueError):
    code = "PERSISTENCE_ERROR"


# ── Handler-side errors ──────────────────────────────────────────

class JobCancelledError(Exception):
    """Raised when a job detects it has been cancelled (cooperative cancellation)."""
    pass


class NonRetryableJobError(Exception):
    """Raised by a handler when retrying cannot help (bad input, missing resource)."""

    code = "NON_RETRYABLE"


class JobTimeoutError(Exception):
    """An attempt ran past the job's timeoutMs."""

    code = "TIMEOUT"


class WorkerLostError(Exception):
    """The process running an attempt went away before it finished."""

    code = "WORKER_LOST"


class DependencyFailedError(NonRetryableJobError):
    """A dependency was cancelled, deleted or failed for good, so it can never complete."""

    code = "DEPENDENCY_FAILED"


def safe_error_message(e: BaseException, fallback: str = "Job interrupted") -> str:
    """Extract a meaningful error message from an exception.

    Some exceptions (especially from third-party libraries or cancellation races)
    produce an empty str(e). This helper falls back to the exception class name.
    """
    msg = str(e).strip()
    if not msg:
        msg = f"{type(e).__name__}: {fallback}"
    return msg
