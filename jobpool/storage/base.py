from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..models.heartbeat import Heartbeat
from ..models.job import EnqueueOptions, Job, JobStatus


class StorageError(Exception):
    """A claim, update or query against the queue store failed."""


class QueueStorage(ABC):
    """Contract every queue backend offers to workers and the pool manager.

    ``claim_next`` is the only correctness mechanism preventing two workers
    from running the same job, so implementations must make it indivisible
    with respect to concurrent callers (a conditional row update, a lock
    around an in-memory structure, ...).
    """

    @abstractmethod
    def enqueue(self, queue: str, type: str, payload: Dict[str, Any],
                options: Optional[EnqueueOptions] = None) -> str:
        ...

    @abstractmethod
    def claim_next(self, queues: Sequence[str], worker_id: str) -> Optional[Job]:
        """Atomically claim the oldest claimable job, trying ``queues`` in order."""

    @abstractmethod
    def update(self, job: Job, expected_owner: Optional[str] = None) -> bool:
        """Persist a job transition.

        Returns False when the stored job is already terminal and the update
        was ignored. Re-applying the same terminal update is not an error.
        With ``expected_owner`` the update only applies while that worker still
        owns the running job, so a reclaimed job is not overwritten late.
        """

    @abstractmethod
    def get(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    def list_jobs(self, status: Optional[JobStatus] = None, queue: Optional[str] = None,
                  limit: Optional[int] = None) -> List[Job]:
        ...

    @abstractmethod
    def pending_count(self, queues: Optional[Iterable[str]] = None) -> int:
        ...

    @abstractmethod
    def queue_stats(self, queue: Optional[str] = None) -> Dict[str, Any]:
        ...

    @abstractmethod
    def cleanup(self, retention: timedelta) -> int:
        ...

    @abstractmethod
    def retry_failed(self, job_id: str) -> Optional[str]:
        """Re-queue a failed job as a new pending job and return the new id.

        The failed job stays terminal and records the new id in ``retried_as``;
        a job is re-queued at most once.
        """

    def retry_failed_jobs(self, queue: Optional[str] = None, limit: int = 50) -> List[str]:
        """Re-queue up to ``limit`` failed jobs, oldest first."""
        new_ids = []
        for job in self.list_jobs(status=JobStatus.FAILED, queue=queue):
            if len(new_ids) >= limit:
                break
            if job.retried_as:
                continue
            new_id = self.retry_failed(job.id)
            if new_id:
                new_ids.append(new_id)
        return new_ids

    @abstractmethod
    def cancel(self, job_id: str) -> bool:
        """Cancel a job that is still waiting to run.

        Only ``pending`` and ``retry_scheduled`` jobs can be cancelled; returns
        False for any other job. Running jobs are never interrupted.
        """

    @abstractmethod
    def clear(self, queue: Optional[str] = None) -> int:
        """Delete every job of ``queue`` (all queues when None) not currently running."""

    @abstractmethod
    def reclaim_expired(self, lease: timedelta, live_worker_ids: Iterable[str]) -> List[str]:
        """Recover ``running`` jobs whose owner stopped checking in."""

    # Heartbeats live next to the jobs so the manager never polls the filesystem

    @abstractmethod
    def record_heartbeat(self, heartbeat: Heartbeat) -> None:
        ...

    @abstractmethod
    def list_heartbeats(self) -> List[Heartbeat]:
        ...

    @abstractmethod
    def remove_heartbeat(self, worker_id: str) -> None:
        ...


def empty_stats() -> Dict[str, Any]:
    stats: Dict[str, Any] = {status.value: 0 for status in JobStatus}
    stats["total"] = 0
    stats["avg_processing_time"] = 0.0
    return stats
