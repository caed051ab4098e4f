import logging
import threading
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..models.heartbeat import Heartbeat
from ..models.job import (
    CLAIMABLE_STATES, DEFAULT_MAX_ATTEMPTS, EnqueueOptions, Job, JobStatus, utcnow,
)
from .base import QueueStorage, StorageError, empty_stats

logger = logging.getLogger("jobpool.storage")


class InMemoryStorage(QueueStorage):
    """Process-local queue store.

    A single lock guards the job table, which gives ``claim_next`` the
    required atomicity for workers running as threads of one process.
    Jobs are copied on the way in and out so workers never share instances.
    """

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._heartbeats: Dict[str, Heartbeat] = {}
        self._lock = threading.Lock()

    def enqueue(self, queue: str, type: str, payload: Dict[str, Any],
                options: Optional[EnqueueOptions] = None) -> str:
        options = options or EnqueueOptions()
        now = utcnow()
        fields = dict(
            queue=queue,
            type=type,
            payload=payload,
            max_attempts=options.max_attempts or DEFAULT_MAX_ATTEMPTS,
            created_at=now,
            scheduled_at=now + timedelta(seconds=options.delay_seconds()),
        )
        if options.job_id:
            fields["id"] = options.job_id
        job = Job(**fields)
        with self._lock:
            if job.id in self._jobs:
                raise StorageError(f"Job '{job.id}' already exists")
            self._jobs[job.id] = job
        return job.id

    def claim_next(self, queues: Sequence[str], worker_id: str) -> Optional[Job]:
        with self._lock:
            now = utcnow()
            for queue in queues:
                candidates = [
                    job for job in self._jobs.values()
                    if job.queue == queue and job.is_claimable(now)
                ]
                if not candidates:
                    continue
                # dicts keep insertion order, so equal timestamps stay FIFO
                job = min(candidates, key=lambda j: j.created_at)
                job.mark_started(worker_id, now)
                return job.model_copy(deep=True)
        return None

    def update(self, job: Job, expected_owner: Optional[str] = None) -> bool:
        with self._lock:
            stored = self._jobs.get(job.id)
            if stored is None:
                raise StorageError(f"Job '{job.id}' not found")
            if stored.is_terminal:
                if stored.status != job.status:
                    logger.warning("Ignoring %s update for job %s: already %s",
                                   job.status.value, job.id, stored.status.value)
                return False
            if expected_owner is not None and (
                stored.status != JobStatus.RUNNING or stored.owner_worker_id != expected_owner
            ):
                logger.warning("Ignoring update for job %s: no longer owned by %s",
                               job.id, expected_owner)
                return False
            self._jobs[job.id] = job.model_copy(deep=True)
            return True

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def list_jobs(self, status: Optional[JobStatus] = None, queue: Optional[str] = None,
                  limit: Optional[int] = None) -> List[Job]:
        with self._lock:
            jobs = [
                job.model_copy(deep=True) for job in self._jobs.values()
                if (status is None or job.status == status)
                and (queue is None or job.queue == queue)
            ]
        jobs.sort(key=lambda j: j.created_at)
        return jobs[:limit] if limit else jobs

    def pending_count(self, queues: Optional[Iterable[str]] = None) -> int:
        names = set(queues) if queues is not None else None
        with self._lock:
            return sum(
                1 for job in self._jobs.values()
                if job.status in CLAIMABLE_STATES
                and (names is None or job.queue in names)
            )

    def queue_stats(self, queue: Optional[str] = None) -> Dict[str, Any]:
        stats = empty_stats()
        times = []
        for job in self.list_jobs(queue=queue):
            stats[job.status.value] += 1
            stats["total"] += 1
            if job.status == JobStatus.COMPLETED and job.processing_time() is not None:
                times.append(job.processing_time())
        if times:
            stats["avg_processing_time"] = sum(times) / len(times)
        return stats

    def cleanup(self, retention: timedelta) -> int:
        cutoff = utcnow() - retention
        with self._lock:
            stale = [
                job_id for job_id, job in self._jobs.items()
                if job.is_terminal and job.completed_at and job.completed_at < cutoff
            ]
            for job_id in stale:
                del self._jobs[job_id]
        return len(stale)

    def retry_failed(self, job_id: str) -> Optional[str]:
        with self._lock:
            original = self._jobs.get(job_id)
            if original is None or original.status != JobStatus.FAILED or original.retried_as:
                return None
            now = utcnow()
            job = Job(
                queue=original.queue,
                type=original.type,
                payload=dict(original.payload),
                max_attempts=original.max_attempts,
                created_at=now,
                scheduled_at=now,
            )
            self._jobs[job.id] = job
            original.retried_as = job.id
        return job.id

    def cancel(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in CLAIMABLE_STATES:
                return False
            job.mark_cancelled()
            return True

    def clear(self, queue: Optional[str] = None) -> int:
        with self._lock:
            doomed = [
                job_id for job_id, job in self._jobs.items()
                if job.status != JobStatus.RUNNING and (queue is None or job.queue == queue)
            ]
            for job_id in doomed:
                del self._jobs[job_id]
        return len(doomed)

    def reclaim_expired(self, lease: timedelta, live_worker_ids: Iterable[str]) -> List[str]:
        live = set(live_worker_ids)
        now = utcnow()
        reclaimed = []
        with self._lock:
            for job in self._jobs.values():
                if job.status != JobStatus.RUNNING or job.owner_worker_id in live:
                    continue
                if job.started_at is None or now - job.started_at < lease:
                    continue
                if job.can_retry:
                    job.schedule_retry(0, "lease expired")
                else:
                    job.mark_failed("lease expired")
                reclaimed.append(job.id)
        return reclaimed

    def record_heartbeat(self, heartbeat: Heartbeat) -> None:
        with self._lock:
            self._heartbeats[heartbeat.worker_id] = heartbeat.model_copy(deep=True)

    def list_heartbeats(self) -> List[Heartbeat]:
        with self._lock:
            return [hb.model_copy(deep=True) for hb in self._heartbeats.values()]

    def remove_heartbeat(self, worker_id: str) -> None:
        with self._lock:
            self._heartbeats.pop(worker_id, None)
