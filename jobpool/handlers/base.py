"""Handler capability bound to a job type."""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..workers.backoff import RetryPolicy
from .errors import JobTimeoutError, ValidationError, is_retryable


@dataclass
class JobContext:
    """Runtime information handed to ``Handler.execute``.

    Long-running handlers should poll ``cancelled`` (or ``check()``) so the
    worker can stop them at their deadline or during an aborting drain; a
    handler that never looks at it keeps running on its own thread until it
    returns, only its outcome is discarded.
    """

    job_id: str
    queue: str
    attempt: int
    worker_id: str
    deadline: float  # time.monotonic() value
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def check(self):
        if self.cancelled:
            raise JobTimeoutError(f"Job {self.job_id} was cancelled")


class Handler:
    max_execution_time: float = 300
    max_attempts: int = 3
    retry_policy: RetryPolicy = RetryPolicy()

    def validate(self, payload: Dict[str, Any]) -> bool:
        return isinstance(payload, dict)

    def execute(self, payload: Dict[str, Any], context: JobContext) -> Any:
        raise NotImplementedError

    def get_max_execution_time(self) -> float:
        return self.max_execution_time

    def on_failure(self, error: BaseException, payload: Dict[str, Any], attempts: int) -> bool:
        """Return True to retry. The worker still enforces ``max_attempts``."""
        if not is_retryable(error):
            return False
        return attempts < self.max_attempts

    def backoff(self, attempts: int) -> float:
        return self.retry_policy.delay(attempts)


def require_keys(payload: Dict[str, Any], *keys: str) -> Dict[str, Any]:
    missing = [key for key in keys if key not in payload]
    if missing:
        raise ValidationError(f"Missing payload keys: {', '.join(missing)}")
    return payload


def handler_timeout(handler: Handler, default: Optional[float] = None) -> float:
    timeout = handler.get_max_execution_time()
    return timeout if timeout and timeout > 0 else (default or Handler.max_execution_time)
