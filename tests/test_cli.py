import json
import time

import pytest
from click.testing import CliRunner

from jobpool.cli import main
from jobpool.config.settings import load_config
from jobpool.models.heartbeat import Heartbeat
from jobpool.models.job import JobStatus
from jobpool.storage.database import Storage


@pytest.fixture
def paths(tmp_path):
    return {"config": str(tmp_path / "config.json"), "db": str(tmp_path / "jobs.db")}


@pytest.fixture
def invoke(paths, monkeypatch):
    monkeypatch.setattr(main.console, "width", 200)
    runner = CliRunner()

    def run(*args):
        return runner.invoke(main.cli, ["--config", paths["config"], "--db", paths["db"], *args])

    return run


def test_enqueue_and_list(invoke, paths):
    result = invoke("enqueue", "echo", '{"to": "a@example.com"}', "--id", "job-1", "--queue", "emails")
    assert result.exit_code == 0
    assert "Job job-1 enqueued on 'emails'" in result.output

    job = Storage(paths["db"]).get("job-1")
    assert job.type == "echo"
    assert job.payload == {"to": "a@example.com"}
    assert job.max_attempts == 3

    result = invoke("list", "--state", "pending")
    assert result.exit_code == 0
    assert "job-1" in result.output

    result = invoke("list", "--state", "completed")
    assert "No jobs found" in result.output


def test_enqueue_rejects_bad_payload(invoke):
    result = invoke("enqueue", "echo", "[1, 2]")
    assert result.exit_code == 1
    assert "Payload must be a JSON object" in result.output

    result = invoke("enqueue", "echo", "{not json")
    assert result.exit_code == 1


def test_enqueue_options(invoke, paths):
    invoke("enqueue", "custom", "--id", "later", "--delay", "3600", "--max-attempts", "7")

    job = Storage(paths["db"]).get("later")
    assert job.max_attempts == 7
    assert not job.is_claimable()


def test_status_counts_jobs(invoke):
    invoke("enqueue", "echo", "--id", "a")
    invoke("enqueue", "echo", "--id", "b")

    result = invoke("status")
    assert result.exit_code == 0
    assert "Queue Status" in result.output
    assert "pending" in result.output
    assert "Live Workers: 0" in result.output


def test_retry_failed_job(invoke, paths):
    invoke("enqueue", "echo", "--id", "broken")
    storage = Storage(paths["db"])
    job = storage.claim_next(["default"], "w")
    job.mark_failed("boom")
    storage.update(job)

    result = invoke("retry", "broken")
    assert result.exit_code == 0
    assert "re-queued" in result.output
    assert len(storage.list_jobs(status=JobStatus.PENDING)) == 1

    result = invoke("retry", "missing")
    assert result.exit_code == 1
    assert "not found or not failed" in result.output

    result = invoke("retry", "broken")
    assert result.exit_code == 1
    assert "already re-queued" in result.output


def test_cleanup_and_reclaim(invoke):
    result = invoke("cleanup", "--days", "1")
    assert result.exit_code == 0
    assert "Removed 0 job(s)" in result.output

    result = invoke("reclaim")
    assert result.exit_code == 0
    assert "Reclaimed 0 job(s)" in result.output


def test_config_get_and_set(invoke, paths):
    result = invoke("config", "set", "max_workers", "8")
    assert result.exit_code == 0
    assert load_config(paths["config"]).max_workers == 8

    result = invoke("config", "set", "worker.drain_mode", "abort")
    assert result.exit_code == 0
    assert load_config(paths["config"]).worker.drain_mode == "abort"

    result = invoke("config", "get", "max_workers")
    assert result.output.strip() == "max_workers: 8"

    result = invoke("config", "get")
    assert json.loads(result.output)["worker"]["drain_mode"] == "abort"


def test_config_set_rejects_bad_values(invoke, paths):
    result = invoke("config", "set", "no_such_key", "1")
    assert result.exit_code == 1
    assert "not found" in result.output

    result = invoke("config", "set", "max_workers", "0")
    assert result.exit_code == 1
    assert load_config(paths["config"]).max_workers == 5


def test_worker_start_processes_jobs(invoke, paths):
    invoke("config", "set", "health_check_interval", "0.1")
    invoke("config", "set", "worker.poll_interval", "0.05")
    invoke("config", "set", "worker.max_memory", str(64 * 1024 ** 3))
    invoke("enqueue", "echo", '{"n": 1}', "--id", "job-1")
    invoke("enqueue", "shell", '{"command": "echo hello"}', "--id", "job-2")

    result = invoke("worker", "start", "--count", "1", "--run-for", "1.5")
    assert result.exit_code == 0, result.output
    assert "Workers stopped. Processed: 2" in result.output

    storage = Storage(paths["db"])
    assert storage.get("job-1").result == {"n": 1}
    assert storage.get("job-2").result == {"exit_code": 0, "output": "hello"}
    assert storage.list_heartbeats() == []


def test_status_counts_only_fresh_heartbeats(invoke, paths):
    storage = Storage(paths["db"])
    now = int(time.time())
    storage.record_heartbeat(Heartbeat(worker_id="fresh", timestamp=now))
    # Default heartbeat interval is 30s, so this one is long stale
    storage.record_heartbeat(Heartbeat(worker_id="gone", timestamp=now - 3600))

    result = invoke("status")
    assert result.exit_code == 0
    assert "Live Workers: 1" in result.output
    assert "CRITICAL: Worker health is below threshold (50%)" in result.output


def test_status_reports_alerts(invoke, paths):
    invoke("config", "set", "alerts.max_queue_size", "1")
    invoke("enqueue", "echo", "--id", "a")
    invoke("enqueue", "echo", "--id", "b")

    result = invoke("status")
    assert "CRITICAL: Queue 'default' has exceeded maximum size (2 jobs)" in result.output

    invoke("config", "set", "alerts.max_queue_size", "1000")
    result = invoke("status")
    assert "No alerts" in result.output


def test_cancel_command(invoke, paths):
    invoke("enqueue", "echo", "--id", "waiting")
    invoke("enqueue", "echo", "--id", "busy")
    storage = Storage(paths["db"])

    result = invoke("cancel", "waiting")
    assert result.exit_code == 0
    assert "Job waiting cancelled" in result.output
    assert storage.get("waiting").status == JobStatus.CANCELLED

    storage.claim_next(["default"], "w")
    result = invoke("cancel", "busy")
    assert result.exit_code == 1
    assert "not waiting to run" in result.output
    assert storage.get("busy").status == JobStatus.RUNNING

    result = invoke("list", "--state", "cancelled")
    assert "waiting" in result.output


def test_clear_command(invoke, paths):
    invoke("enqueue", "echo", "--id", "a", "--queue", "emails")
    invoke("enqueue", "echo", "--id", "b")

    result = invoke("clear", "--queue", "emails")
    assert result.exit_code == 1
    assert Storage(paths["db"]).get("a") is not None

    result = invoke("clear", "--queue", "emails", "--yes")
    assert result.exit_code == 0
    assert "Removed 1 job(s)" in result.output
    storage = Storage(paths["db"])
    assert storage.get("a") is None
    assert storage.get("b") is not None


def test_retry_failed_command(invoke, paths):
    storage = Storage(paths["db"])
    for n in range(3):
        invoke("enqueue", "echo", "--id", f"job-{n}")
        job = storage.claim_next(["default"], "w")
        job.mark_failed("boom")
        storage.update(job)

    result = invoke("retry-failed", "--limit", "2")
    assert result.exit_code == 0
    assert "Re-queued 2 job(s)" in result.output

    result = invoke("retry-failed")
    assert "Re-queued 1 job(s)" in result.output
    assert len(storage.list_jobs(status=JobStatus.PENDING)) == 3


def test_enqueue_uses_handler_attempts(invoke, paths, tmp_path, monkeypatch):
    (tmp_path / "extra_handlers.py").write_text(
        "from jobpool.handlers.base import Handler\n"
        "\n"
        "class Patient(Handler):\n"
        "    max_attempts = 5\n"
        "\n"
        "def setup(registry):\n"
        "    registry.register('patient', Patient())\n"
    )
    monkeypatch.syspath_prepend(str(tmp_path))

    invoke("enqueue", "patient", "--id", "p", "--setup", "extra_handlers:setup")
    invoke("enqueue", "patient", "--id", "q", "--setup", "extra_handlers:setup", "--max-attempts", "2")

    storage = Storage(paths["db"])
    assert storage.get("p").max_attempts == 5
    assert storage.get("q").max_attempts == 2
