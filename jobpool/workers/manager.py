import math
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import uuid4
from ..config.settings import PoolConfig
from ..handlers.registry import HandlerRegistry, enqueue_job
from ..models.job import EnqueueOptions
from ..storage.base import QueueStorage, StorageError
from .alerts import Alert, evaluate
from .worker import Worker
import logging


@dataclass
class WorkerHandle:
    worker: Worker
    thread: threading.Thread
    queues: List[str]
    started_at: float = field(default_factory=time.time)

    @property
    def worker_id(self) -> str:
        return self.worker.worker_id

    def is_alive(self) -> bool:
        return self.thread.is_alive()


class WorkerManager:
    """Owns every worker thread of the pool.

    All lifecycle operations go through this object; it never shares a lock
    with the workers, it only signals them and reads what they report.
    """

    def __init__(self, storage: QueueStorage, registry: HandlerRegistry, config: PoolConfig = None,
                 worker_factory: Callable[..., Worker] = None):
        self.storage = storage
        self.registry = registry
        self.config = config or PoolConfig()
        self.worker_factory = worker_factory or Worker
        self.workers: Dict[str, WorkerHandle] = {}
        self.draining: Dict[str, WorkerHandle] = {}
        self.unhealthy: set = set()
        # Final stats of workers that have exited, keyed by worker id
        self.finished: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger("jobpool.manager")

    def start_worker(self, queues: Sequence[str] = None) -> str:
        """Start a single worker thread bound to ``queues``"""
        queues = list(queues or self.config.queues)
        worker_id = f"worker-{uuid4().hex[:12]}"
        worker = self.worker_factory(
            worker_id, self.storage, self.registry, queues=queues, config=self.config.worker
        )
        thread = threading.Thread(target=worker.start, name=worker_id, daemon=True)
        with self._lock:
            self.workers[worker_id] = WorkerHandle(worker, thread, queues)
        thread.start()
        self.logger.info(f"Started worker {worker_id} for queues: {', '.join(queues)}")
        return worker_id

    def start_workers(self, count: int = 1, queues: Sequence[str] = None) -> List[str]:
        """Start the specified number of workers"""
        return [self.start_worker(queues) for _ in range(count)]

    def stop_worker(self, worker_id: str, wait: bool = True, timeout: float = None) -> bool:
        with self._lock:
            handle = self.workers.pop(worker_id, None) or self.draining.pop(worker_id, None)
            if handle is None:
                return False
            if not wait:
                self.draining[worker_id] = handle
        handle.worker.stop()
        if wait:
            handle.thread.join(timeout)
            self._record_finished(handle)
        self.unhealthy.discard(worker_id)
        self.logger.info(f"Stopped worker {worker_id}" if wait else f"Draining worker {worker_id}")
        return True

    def stop_all(self, timeout: float = None):
        """Signal every worker to drain and wait until all have stopped"""
        with self._lock:
            handles = list(self.workers.values()) + list(self.draining.values())
            self.workers.clear()
            self.draining.clear()

        for handle in handles:
            handle.worker.stop()

        # Wait for all workers to finish their current jobs
        for handle in handles:
            handle.thread.join(timeout)
            self._record_finished(handle)
        self.unhealthy.clear()
        self.logger.info(f"Stopped {len(handles)} worker(s)")

    def reap(self) -> List[str]:
        """Forget workers that reached Stopped; replace the ones that retired themselves."""
        with self._lock:
            finished = [h for h in self.workers.values() if not h.is_alive()]
            for handle in finished:
                del self.workers[handle.worker_id]
            drained = [h for h in self.draining.values() if not h.is_alive()]
            for handle in drained:
                del self.draining[handle.worker_id]

        for handle in drained:
            self._record_finished(handle)
        for handle in finished:
            self._record_finished(handle)
            # Flagged workers were replaced when the health check caught them
            replaced = handle.worker_id in self.unhealthy
            self.unhealthy.discard(handle.worker_id)
            reason = handle.worker.stop_reason
            self.logger.info(f"Worker {handle.worker_id} exited" + (f" ({reason})" if reason else ""))
            if reason and self.config.auto_restart and not replaced:
                self.start_worker(handle.queues)
        return [h.worker_id for h in finished]

    def _record_finished(self, handle: WorkerHandle):
        self.finished[handle.worker_id] = handle.worker.get_stats()

    def target_workers(self, pending_count: int) -> int:
        wanted = math.ceil(max(pending_count, 0) / self.config.jobs_per_worker)
        return min(self.config.max_workers, max(1, wanted))

    def scale_workers(self, pending_count: int = None) -> int:
        """Grow or drain the pool to match queue depth; returns the new target."""
        if pending_count is None:
            pending_count = self.storage.pending_count(self.config.queues)

        self.reap()
        target = self.target_workers(pending_count)
        current = len(self.workers)

        if target > current:
            self.start_workers(target - current)
            self.logger.info(f"Scaled up to {target} workers ({pending_count} pending jobs)")
        elif target < current:
            # Unhealthy first, then oldest
            with self._lock:
                ordered = sorted(
                    self.workers.values(),
                    key=lambda h: (h.worker_id not in self.unhealthy, h.started_at),
                )
            for handle in ordered[:current - target]:
                self.stop_worker(handle.worker_id, wait=False)
            self.logger.info(f"Scaled down to {target} workers ({pending_count} pending jobs)")
        return target

    def check_health(self, now: float = None) -> List[str]:
        """Flag workers with stale heartbeats or excess memory and reclaim orphaned jobs.

        Returns the ids of workers newly judged unhealthy.
        """
        now = now if now is not None else time.time()
        interval = self.config.worker.heartbeat_interval
        max_memory = self.config.worker.max_memory

        try:
            heartbeats = {hb.worker_id: hb for hb in self.storage.list_heartbeats()}
        except StorageError as e:
            self.logger.warning(f"Health check skipped: {e}")
            return []

        newly_unhealthy = []
        with self._lock:
            handles = dict(self.workers)
            owned = {**self.workers, **self.draining}
        for handle in handles.values():
            heartbeat = heartbeats.get(handle.worker_id)
            if heartbeat is None:
                healthy = now - handle.started_at <= 2 * interval
            else:
                healthy = heartbeat.is_healthy(interval, max_memory, now)
            if handle.worker_id in self.unhealthy:
                if healthy and heartbeat is not None:
                    self.unhealthy.discard(handle.worker_id)
                    self.logger.info(f"Worker {handle.worker_id} is healthy again")
                continue
            if not healthy:
                self.unhealthy.add(handle.worker_id)
                newly_unhealthy.append(handle.worker_id)

        # Records of workers we no longer own and that went silent
        for worker_id, heartbeat in heartbeats.items():
            if worker_id in owned:
                continue
            if not heartbeat.is_healthy(interval, max_memory, now):
                self._forget_heartbeat(worker_id)

        for worker_id in newly_unhealthy:
            self.logger.warning(f"Worker {worker_id} is unhealthy")
            self._forget_heartbeat(worker_id)
            if self.config.auto_restart:
                # The unhealthy worker finishes its job and retires through its own resource checks
                self.start_worker(handles[worker_id].queues)

        # A job stays owned while its worker thread runs here or its worker checks in
        # from elsewhere, unhealthy or not
        live = {worker_id for worker_id, handle in owned.items() if handle.is_alive()}
        live.update(
            worker_id for worker_id, heartbeat in heartbeats.items()
            if heartbeat.age(now) <= 2 * interval
        )
        try:
            reclaimed = self.storage.reclaim_expired(
                timedelta(seconds=self.config.lease_seconds()), live
            )
        except StorageError as e:
            self.logger.warning(f"Lease reclaim failed: {e}")
            reclaimed = []
        for job_id in reclaimed:
            self.logger.warning(f"Reclaimed job {job_id} after its lease expired")
        return newly_unhealthy

    def _forget_heartbeat(self, worker_id: str):
        try:
            self.storage.remove_heartbeat(worker_id)
        except StorageError as e:
            self.logger.warning(f"Could not remove heartbeat of {worker_id}: {e}")

    def enqueue(self, queue: str, job_type: str, payload: Dict[str, Any],
                options: EnqueueOptions = None) -> str:
        return enqueue_job(self.storage, self.registry, queue, job_type, payload, options)

    def check_alerts(self) -> List[Alert]:
        """Evaluate the configured thresholds and log whatever trips."""
        with self._lock:
            total = len(self.workers)
        found = evaluate(self.storage, self.config.alerts, self.config.queues,
                         healthy=self.active_workers_count(), total=total)
        for alert in found:
            if alert.is_critical:
                self.logger.error(alert.message)
            else:
                self.logger.warning(alert.message)
        return found

    def run(self, stop_event: threading.Event, autoscale: bool = True):
        """Control loop: reap, scale and health-check until ``stop_event`` is set."""
        self.logger.info("Worker manager control loop started")
        try:
            while not stop_event.is_set():
                try:
                    if autoscale:
                        self.scale_workers()
                    else:
                        self.reap()
                    self.check_health()
                    self.check_alerts()
                except StorageError as e:
                    self.logger.warning(f"Control loop storage error: {e}")
                stop_event.wait(self.config.health_check_interval)
        finally:
            self.stop_all()

    def get_worker_stats(self, worker_id: str = None):
        with self._lock:
            handles = {**self.workers, **self.draining}
        if worker_id:
            handle = handles.get(worker_id)
            return handle.worker.get_stats() if handle else None
        return {wid: handle.worker.get_stats() for wid, handle in handles.items()}

    def get_stats(self) -> Dict[str, Any]:
        stats = {
            "total_workers": 0,
            "active_workers": 0,
            "total_processed": 0,
            "total_succeeded": 0,
            "total_failed": 0,
            "avg_success_rate": 0.0,
            "avg_processing_time": 0.0,
        }
        success_rates = []
        processing_times = []

        current = self.get_worker_stats()
        for worker_stats in current.values():
            stats["total_workers"] += 1
            if worker_stats["is_running"]:
                stats["active_workers"] += 1

        # Counters also cover workers that already exited
        history = {**self.finished, **current}
        for worker_stats in history.values():
            stats["total_processed"] += worker_stats["jobs_processed"]
            stats["total_succeeded"] += worker_stats["jobs_succeeded"]
            stats["total_failed"] += worker_stats["jobs_failed"]
            if worker_stats["jobs_processed"] > 0:
                success_rates.append(worker_stats["success_rate"])
                processing_times.append(worker_stats["avg_processing_time"])

        if success_rates:
            stats["avg_success_rate"] = sum(success_rates) / len(success_rates)
        if processing_times:
            stats["avg_processing_time"] = sum(processing_times) / len(processing_times)
        return stats

    def active_workers_count(self) -> int:
        """Get the count of workers that are running and not flagged unhealthy"""
        with self._lock:
            handles = list(self.workers.values())
        return sum(
            1 for h in handles
            if h.worker_id not in self.unhealthy and h.worker.is_healthy()
        )
