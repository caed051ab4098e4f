import time

import pytest

from jobpool.config.settings import PoolConfig, WorkerConfig
from jobpool.handlers.base import Handler
from jobpool.handlers.errors import TransientError
from jobpool.handlers.registry import HandlerRegistry
from jobpool.storage.database import Storage
from jobpool.storage.memory import InMemoryStorage
from jobpool.workers.backoff import RetryPolicy


@pytest.fixture
def temp_db(tmp_path):
    return str(tmp_path / "jobs.db")


@pytest.fixture
def memory_storage():
    return InMemoryStorage()


@pytest.fixture(params=["memory", "sqlite"])
def any_storage(request, temp_db):
    if request.param == "memory":
        return InMemoryStorage()
    return Storage(temp_db)


@pytest.fixture
def worker_config():
    # Growth of the test process while a worker runs must never trip the limit
    return WorkerConfig(
        poll_interval=0.01,
        heartbeat_interval=1.0,
        max_memory=64 * 1024 ** 3,
        max_execution_time=3600,
    )


@pytest.fixture
def pool_config(worker_config):
    return PoolConfig(max_workers=5, jobs_per_worker=10, worker=worker_config,
                      health_check_interval=0.05)


class RecordingHandler(Handler):
    max_execution_time = 5
    retry_policy = RetryPolicy(base_delay=0.01, multiplier=2, max_delay=0.1)

    def __init__(self, fail_times=0, error=TransientError):
        self.fail_times = fail_times
        self.error = error
        self.calls = []

    def execute(self, payload, context):
        self.calls.append(context.attempt)
        if len(self.calls) <= self.fail_times:
            raise self.error(f"failure {len(self.calls)}")
        return {"ok": True, "echo": payload}


class SlowHandler(Handler):
    max_execution_time = 0.2
    max_attempts = 1

    def __init__(self, seconds=2.0, cooperative=False):
        self.seconds = seconds
        self.cooperative = cooperative

    def execute(self, payload, context):
        end = time.monotonic() + self.seconds
        while time.monotonic() < end:
            if self.cooperative:
                context.check()
            time.sleep(0.01)
        return "finished"


@pytest.fixture
def registry():
    registry = HandlerRegistry()
    registry.register("record", RecordingHandler())
    return registry


class ProcessMemory:
    """Stands in for the process RSS reading shared by every worker thread."""

    def __init__(self, rss=0):
        self.rss = rss

    def __call__(self):
        return self.rss


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
