"""Threshold checks over queue depth, failure rate, processing time and worker health."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..config.settings import AlertThresholds
from ..storage.base import QueueStorage

WARNING = "warning"
CRITICAL = "critical"

# A queue past this share of max_queue_size gets a warning
QUEUE_WARNING_RATIO = 0.8


@dataclass
class Alert:
    level: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_critical(self) -> bool:
        return self.level == CRITICAL


def check_queue_sizes(sizes: Dict[str, int], thresholds: AlertThresholds) -> List[Alert]:
    alerts = []
    for queue, size in sizes.items():
        if size > thresholds.max_queue_size:
            alerts.append(Alert(CRITICAL, f"Queue '{queue}' has exceeded maximum size ({size} jobs)",
                                {"queue": queue, "size": size}))
        elif size > thresholds.max_queue_size * QUEUE_WARNING_RATIO:
            alerts.append(Alert(WARNING, f"Queue '{queue}' is approaching maximum capacity ({size} jobs)",
                                {"queue": queue, "size": size}))
    return alerts


def check_failure_rate(stats: Dict[str, Any], thresholds: AlertThresholds) -> List[Alert]:
    finished = stats.get("completed", 0) + stats.get("failed", 0)
    if not finished:
        return []
    rate = stats.get("failed", 0) / finished * 100
    if rate <= thresholds.max_failed_jobs_percentage:
        return []
    return [Alert(CRITICAL, f"Job failure rate is too high ({rate:.1f}%)",
                  {"failure_rate": rate, "failed_jobs": stats.get("failed", 0), "total_jobs": finished})]


def check_processing_time(stats: Dict[str, Any], thresholds: AlertThresholds) -> List[Alert]:
    average = stats.get("avg_processing_time", 0.0)
    if average <= thresholds.max_avg_processing_time:
        return []
    return [Alert(WARNING, f"Average processing time is too high ({average:.1f}s)",
                  {"avg_processing_time": average})]


def check_worker_health(healthy: int, total: int, thresholds: AlertThresholds) -> List[Alert]:
    if total <= 0:
        return []
    percentage = healthy / total * 100
    if percentage >= thresholds.min_worker_health_percentage:
        return []
    return [Alert(CRITICAL, f"Worker health is below threshold ({percentage:.0f}%)",
                  {"healthy_workers": healthy, "total_workers": total})]


def evaluate(storage: QueueStorage, thresholds: AlertThresholds, queues: Iterable[str],
             healthy: Optional[int] = None, total: Optional[int] = None) -> List[Alert]:
    """Run every check against current storage state.

    Worker health is only checked when the caller knows the worker counts.
    """
    sizes = {queue: storage.pending_count([queue]) for queue in queues}
    stats = storage.queue_stats()
    alerts = check_queue_sizes(sizes, thresholds)
    alerts += check_failure_rate(stats, thresholds)
    alerts += check_processing_time(stats, thresholds)
    if healthy is not None and total is not None:
        alerts += check_worker_health(healthy, total, thresholds)
    return alerts
