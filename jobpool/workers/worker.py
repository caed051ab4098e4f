import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence
from ..config.settings import WorkerConfig
from ..handlers.base import Handler, JobContext, handler_timeout
from ..handlers.errors import (
    JobTimeoutError, ValidationError, WorkerShutdown, describe, is_retryable,
)
from ..handlers.registry import HandlerRegistry
from ..models.heartbeat import Heartbeat
from ..models.job import Job
from ..storage.base import QueueStorage, StorageError
import logging
import psutil

_PROCESS = psutil.Process()


def process_memory() -> int:
    """Resident set size of this process in bytes.

    Workers are threads of one process, so each worker measures its own
    usage as growth of this value since the worker started.
    """
    return _PROCESS.memory_info().rss


class WorkerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    EXECUTING = "executing"
    FINALIZING = "finalizing"
    DRAINING = "draining"
    STOPPED = "stopped"


_NO_OUTCOME = object()


class Worker:
    def __init__(self, worker_id: str, storage: QueueStorage, registry: HandlerRegistry,
                 queues: Sequence[str] = ("default",), config: WorkerConfig = None,
                 memory_probe: Callable[[], int] = None):
        if not queues:
            raise ValueError("A worker needs at least one queue")
        self.worker_id = worker_id
        self.storage = storage
        self.registry = registry
        self.queues: List[str] = list(queues)
        self.config = config or WorkerConfig()
        self.memory_probe = memory_probe or process_memory
        self.state = WorkerState.IDLE
        self.running = False
        self.stop_reason: Optional[str] = None
        self.current_job: Optional[Job] = None
        self.last_heartbeat: Optional[Heartbeat] = None
        self._stop_event = threading.Event()
        self._abort_event = threading.Event()
        self._context: Optional[JobContext] = None
        self._last_heartbeat_at: Optional[float] = None
        self._started_at: Optional[float] = None
        self._memory_baseline: Optional[int] = None
        self.stats = {
            "jobs_processed": 0,
            "jobs_succeeded": 0,
            "jobs_failed": 0,
            "start_time": None,
            "memory_usage": 0,
            "processing_times": [],
        }
        self.logger = logging.getLogger(f"jobpool.worker.{worker_id}")

    def start(self):
        self.running = True
        self._started_at = time.monotonic()
        self._memory_baseline = self.memory_probe()
        self.stats["start_time"] = time.time()
        self.run()

    def stop(self, abort: bool = None):
        """Ask the worker to drain.

        With ``abort`` (default: ``drain_mode == "abort"``) an in-flight job is
        failed with WorkerShutdown instead of being allowed to finish.
        """
        if abort is None:
            abort = self.config.drain_mode == "abort"
        if abort:
            self._abort_event.set()
            if self._context is not None:
                self._context.cancel_event.set()
        self._stop_event.set()
        if self.state != WorkerState.STOPPED:
            self.state = WorkerState.DRAINING

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def memory_usage(self) -> int:
        """Process memory growth in bytes since this worker started."""
        rss = self.memory_probe()
        if self._memory_baseline is None:
            self._memory_baseline = rss
        self.stats["memory_usage"] = max(0, rss - self._memory_baseline)
        return self.stats["memory_usage"]

    def should_restart(self) -> Optional[str]:
        """Reason this worker should retire itself, if any."""
        memory = self.memory_usage()
        if memory > self.config.max_memory:
            return f"memory usage {memory} exceeds {self.config.max_memory}"
        if self._started_at is not None and self.uptime() > self.config.max_execution_time:
            return f"uptime exceeds {self.config.max_execution_time}s"
        return None

    def uptime(self) -> float:
        if self._started_at is None:
            return 0.0
        return time.monotonic() - self._started_at

    def heartbeat(self, force: bool = False) -> Optional[Heartbeat]:
        now = time.monotonic()
        if (not force and self._last_heartbeat_at is not None
                and now - self._last_heartbeat_at < self.config.heartbeat_interval):
            return None

        self._last_heartbeat_at = now
        heartbeat = Heartbeat(
            worker_id=self.worker_id,
            timestamp=int(time.time()),
            memory_usage=self.memory_usage(),
            jobs_processed=self.stats["jobs_processed"],
            current_job=self.current_job.id if self.current_job else None,
            queues=self.queues,
        )
        self.last_heartbeat = heartbeat
        try:
            self.storage.record_heartbeat(heartbeat)
        except StorageError as e:
            self.logger.warning(f"Could not persist heartbeat: {e}")
        return heartbeat

    def run(self):
        """Main worker loop"""
        self.logger.info(f"Worker {self.worker_id} started for queues: {', '.join(self.queues)}")
        try:
            while True:
                if self._stop_event.is_set():
                    break

                reason = self.should_restart()
                if reason:
                    self.stop_reason = reason
                    self.logger.warning(f"Worker {self.worker_id} retiring: {reason}")
                    break

                try:
                    self.heartbeat()

                    self.state = WorkerState.POLLING
                    job = self.storage.claim_next(self.queues, self.worker_id)
                    if job:
                        self.process_job(job)
                    else:
                        # No jobs available, sleep until the next poll or a stop request
                        self._idle()
                        self._stop_event.wait(self.config.poll_interval)

                except StorageError as e:
                    self.logger.warning(f"Storage error: {e}")
                    self._idle()
                    self._stop_event.wait(self.config.poll_interval)
                except Exception as e:
                    self.logger.exception(f"Worker error: {e}")
                    self._idle()
                    self._stop_event.wait(self.config.poll_interval)
        finally:
            self._shutdown()

    def _idle(self):
        self.state = WorkerState.DRAINING if self.stopping else WorkerState.IDLE

    def process_job(self, job: Job):
        """Run one claimed job and persist its outcome."""
        self.current_job = job
        self.state = WorkerState.EXECUTING
        started = time.monotonic()
        handler: Optional[Handler] = None
        self.logger.info(f"Processing job {job.id} ({job.type}) attempt {job.attempts}/{job.max_attempts}")

        try:
            handler = self.registry.get(job.type)
            if not handler.validate(job.payload):
                raise ValidationError(f"Invalid payload for '{job.type}'")
            result = self.execute_with_deadline(handler, job)
        except Exception as e:
            self.state = WorkerState.FINALIZING
            self.stats["jobs_processed"] += 1
            self.stats["jobs_failed"] += 1
            self.handle_failure(job, handler, e)
        else:
            self.state = WorkerState.FINALIZING
            elapsed = time.monotonic() - started
            job.mark_completed(result)
            self.stats["jobs_processed"] += 1
            self.stats["jobs_succeeded"] += 1
            self.stats["processing_times"].append(elapsed)
            self.logger.info(f"Job {job.id} completed in {elapsed:.2f}s")
            self._save(job)
        finally:
            self.current_job = None
            self._context = None
            self._idle()

    def execute_with_deadline(self, handler: Handler, job: Job) -> Any:
        """Run the handler on its own thread and supervise its deadline.

        The worker keeps heartbeating while it waits. On timeout or an
        aborting drain the context is cancelled and the worker moves on; a
        handler that ignores the cancellation keeps its daemon thread until
        it returns.
        """
        timeout = handler_timeout(handler)
        context = JobContext(
            job_id=job.id,
            queue=job.queue,
            attempt=job.attempts,
            worker_id=self.worker_id,
            deadline=time.monotonic() + timeout,
        )
        self._context = context
        outcome = {"result": _NO_OUTCOME, "error": None}

        def target():
            try:
                outcome["result"] = handler.execute(job.payload, context)
            except Exception as e:
                outcome["error"] = e

        thread = threading.Thread(target=target, name=f"{self.worker_id}-{job.id}", daemon=True)
        thread.start()

        tick = min(self.config.poll_interval, self.config.heartbeat_interval, 0.5)
        while thread.is_alive():
            remaining = context.deadline - time.monotonic()
            if remaining <= 0:
                context.cancel_event.set()
                raise JobTimeoutError(f"Job exceeded max execution time of {timeout}s")
            if self._abort_event.is_set():
                context.cancel_event.set()
                raise WorkerShutdown("Worker shutdown")
            thread.join(min(remaining, tick))
            self.heartbeat()

        if outcome["error"] is not None:
            raise outcome["error"]
        if outcome["result"] is _NO_OUTCOME:
            raise RuntimeError("Handler exited without returning")
        return outcome["result"]

    def handle_failure(self, job: Job, handler: Optional[Handler], error: Exception):
        message = describe(error)
        should_retry = False
        if handler is not None and is_retryable(error):
            try:
                should_retry = handler.on_failure(error, job.payload, job.attempts)
            except Exception:
                self.logger.exception(f"on_failure raised for job {job.id}")

        if should_retry and job.can_retry:
            delay = handler.backoff(job.attempts)
            job.schedule_retry(delay, message)
            self.logger.info(f"Job {job.id} scheduled for retry in {delay:.1f}s (attempt {job.attempts}): {message}")
        else:
            job.mark_failed(message)
            self.logger.error(f"Job {job.id} failed permanently: {message}")
        self._save(job)

    def _save(self, job: Job):
        try:
            self.storage.update(job, expected_owner=self.worker_id)
        except StorageError as e:
            # Left running; the manager's lease reclaim recovers it
            self.logger.error(f"Could not record outcome of job {job.id}: {e}")

    def _shutdown(self):
        self.running = False
        self.state = WorkerState.STOPPED
        try:
            self.storage.remove_heartbeat(self.worker_id)
        except StorageError as e:
            self.logger.warning(f"Could not remove heartbeat: {e}")
        self.log_final_stats()

    def log_final_stats(self):
        stats = self.get_stats()
        self.logger.info(
            f"Worker {self.worker_id} stopped after {stats['runtime']:.0f}s. "
            f"Processed: {stats['jobs_processed']}, succeeded: {stats['jobs_succeeded']}, "
            f"failed: {stats['jobs_failed']}, success rate: {stats['success_rate']:.2f}%, "
            f"avg processing time: {stats['avg_processing_time']:.2f}s"
        )

    def get_stats(self) -> Dict[str, Any]:
        processed = self.stats["jobs_processed"]
        times = self.stats["processing_times"]
        return {
            "worker_id": self.worker_id,
            "queues": self.queues,
            "state": self.state.value,
            "is_running": self.running,
            "start_time": self.stats["start_time"],
            "runtime": self.uptime(),
            "jobs_processed": processed,
            "jobs_succeeded": self.stats["jobs_succeeded"],
            "jobs_failed": self.stats["jobs_failed"],
            "success_rate": (self.stats["jobs_succeeded"] / processed * 100) if processed else 0.0,
            "avg_processing_time": (sum(times) / len(times)) if times else 0.0,
            "memory_usage": self.stats["memory_usage"],
            "last_heartbeat": self.last_heartbeat.timestamp if self.last_heartbeat else None,
            "current_job": self.current_job.id if self.current_job else None,
            "stop_reason": self.stop_reason,
        }

    def is_healthy(self, now: float = None) -> bool:
        if not self.running:
            return False
        if self.last_heartbeat is None:
            return True
        return self.last_heartbeat.is_healthy(
            self.config.heartbeat_interval, self.config.max_memory, now
        )
