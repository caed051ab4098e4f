from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union
from pydantic import BaseModel, Field, field_validator
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    RETRY_SCHEDULED = "retry_scheduled"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


CLAIMABLE_STATES = (JobStatus.PENDING, JobStatus.RETRY_SCHEDULED)
TERMINAL_STATES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)
DEFAULT_MAX_ATTEMPTS = 3


class InvalidTransition(ValueError):
    """Raised when a job is moved out of a terminal state."""


class EnqueueOptions(BaseModel):
    max_attempts: Optional[int] = Field(default=None, ge=1)
    delay: Union[float, timedelta, None] = None  # seconds or timedelta
    job_id: Optional[str] = None

    def delay_seconds(self) -> float:
        if self.delay is None:
            return 0.0
        if isinstance(self.delay, timedelta):
            return self.delay.total_seconds()
        return float(self.delay)


class Job(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    queue: str = "default"
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    scheduled_at: datetime = Field(default_factory=utcnow)
    owner_worker_id: Optional[str] = None
    result: Any = None
    error: Optional[str] = None
    retried_as: Optional[str] = None  # id of the job an operator re-queued this one as
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"validate_assignment": True}

    @field_validator("scheduled_at", "created_at", "started_at", "completed_at")
    @classmethod
    def _ensure_utc(cls, value):
        # SQLite hands back naive datetimes; everything in here is UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def can_retry(self) -> bool:
        return self.attempts < self.max_attempts

    def is_claimable(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return (
            self.status in CLAIMABLE_STATES
            and self.scheduled_at <= now
            and self.attempts < self.max_attempts
        )

    def processing_time(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def _guard(self):
        if self.is_terminal:
            raise InvalidTransition(f"Job {self.id} is already {self.status.value}")

    def mark_started(self, worker_id: str, now: Optional[datetime] = None):
        self._guard()
        self.status = JobStatus.RUNNING
        self.owner_worker_id = worker_id
        self.started_at = now or utcnow()
        self.completed_at = None
        self.attempts += 1

    def mark_completed(self, result: Any = None):
        self._guard()
        self.status = JobStatus.COMPLETED
        self.result = result
        self.error = None
        self.owner_worker_id = None
        self.completed_at = utcnow()

    def mark_failed(self, error: str):
        self._guard()
        self.status = JobStatus.FAILED
        self.error = error
        self.owner_worker_id = None
        self.completed_at = utcnow()

    def mark_cancelled(self):
        if self.status not in CLAIMABLE_STATES:
            raise InvalidTransition(f"Job {self.id} is {self.status.value}, only waiting jobs can be cancelled")
        self.status = JobStatus.CANCELLED
        self.owner_worker_id = None
        self.completed_at = utcnow()

    def schedule_retry(self, delay: float, error: str):
        self._guard()
        now = utcnow()
        self.status = JobStatus.RETRY_SCHEDULED
        self.error = error
        self.owner_worker_id = None
        self.completed_at = now
        self.scheduled_at = now + timedelta(seconds=delay)
