class JobError(Exception):
    """Base class for failures raised while processing a job."""

    retryable = True


class ValidationError(JobError):
    """The payload was rejected by the handler. Never retried."""

    retryable = False


class TransientError(JobError):
    """A downstream dependency failed; retry per the handler's policy."""


class JobTimeoutError(JobError):
    """The handler ran past its declared max execution time."""


class HandlerNotFound(JobError):
    retryable = False

    def __init__(self, job_type: str):
        super().__init__(f"No handler registered for job type '{job_type}'")
        self.job_type = job_type


class WorkerShutdown(JobError):
    """The owning worker aborted the job while draining."""


def is_retryable(error: BaseException) -> bool:
    return getattr(error, "retryable", True)


def describe(error: BaseException) -> str:
    message = str(error)
    name = type(error).__name__
    return f"{name}: {message}" if message else name
