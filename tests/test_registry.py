import time

import pytest

from jobpool.handlers.base import Handler, JobContext, handler_timeout, require_keys
from jobpool.handlers.builtin import EchoHandler, ShellCommandHandler, default_registry
from jobpool.handlers.errors import (
    HandlerNotFound, JobTimeoutError, TransientError, ValidationError, WorkerShutdown,
    describe, is_retryable,
)
from jobpool.handlers.registry import HandlerRegistry, enqueue_job, resolve_options
from jobpool.models.job import EnqueueOptions


def make_context(timeout=5.0):
    return JobContext(job_id="job-1", queue="default", attempt=1, worker_id="w1",
                      deadline=time.monotonic() + timeout)


def test_register_and_get():
    registry = HandlerRegistry()
    handler = EchoHandler()
    registry.register("echo", handler)

    assert registry.get("echo") is handler
    assert "echo" in registry
    assert registry.types() == ["echo"]


def test_unknown_type_raises():
    with pytest.raises(HandlerNotFound) as exc:
        HandlerRegistry().get("SendEmail")
    assert exc.value.job_type == "SendEmail"
    assert not is_retryable(exc.value)


def test_register_rejects_bad_input():
    registry = HandlerRegistry()
    with pytest.raises(ValueError):
        registry.register("", EchoHandler())
    with pytest.raises(TypeError):
        registry.register("echo", lambda payload: payload)


def test_frozen_registry_rejects_registration():
    registry = default_registry()
    registry.freeze()
    assert registry.is_frozen()
    with pytest.raises(RuntimeError):
        registry.register("late", EchoHandler())
    assert registry.types() == ["echo", "shell"]


def test_error_taxonomy():
    assert is_retryable(TransientError("smtp down"))
    assert is_retryable(JobTimeoutError("slow"))
    assert is_retryable(WorkerShutdown())
    assert is_retryable(RuntimeError("unexpected"))
    assert not is_retryable(ValidationError("bad"))
    assert describe(ValidationError("missing to")) == "ValidationError: missing to"
    assert describe(WorkerShutdown()) == "WorkerShutdown"


def test_handler_defaults():
    handler = Handler()
    assert handler.get_max_execution_time() == 300
    assert handler.validate({})
    assert not handler.validate(["not", "a", "dict"])
    assert handler.on_failure(TransientError("x"), {}, attempts=2)
    assert not handler.on_failure(TransientError("x"), {}, attempts=3)
    assert not handler.on_failure(ValidationError("x"), {}, attempts=1)
    with pytest.raises(NotImplementedError):
        handler.execute({}, make_context())


def test_handler_timeout_falls_back_to_default():
    handler = EchoHandler()
    assert handler_timeout(handler) == 5
    handler.max_execution_time = 0
    assert handler_timeout(handler) == 300
    assert handler_timeout(handler, default=10) == 10


def test_require_keys():
    assert require_keys({"to": "a"}, "to") == {"to": "a"}
    with pytest.raises(ValidationError, match="subject"):
        require_keys({"to": "a"}, "to", "subject")


def test_context_cancellation():
    context = make_context()
    context.check()
    context.cancel_event.set()
    assert context.cancelled
    with pytest.raises(JobTimeoutError):
        context.check()
    assert make_context(timeout=-1).remaining() == 0


def test_shell_handler_runs_command():
    handler = ShellCommandHandler()
    assert handler.validate({"command": "echo hi"})
    assert not handler.validate({"command": "  "})
    assert not handler.validate({})

    result = handler.execute({"command": "echo hello"}, make_context())
    assert result == {"exit_code": 0, "output": "hello"}


def test_shell_handler_nonzero_exit_is_transient():
    with pytest.raises(TransientError, match="exit_code=3"):
        ShellCommandHandler().execute({"command": "echo oops >&2; exit 3"}, make_context())


def test_shell_handler_kills_command_at_deadline():
    started = time.monotonic()
    with pytest.raises(JobTimeoutError):
        ShellCommandHandler().execute({"command": "exec sleep 5"}, make_context(timeout=0.2))
    assert time.monotonic() - started < 4


class PatientHandler(Handler):
    max_attempts = 5


def test_enqueue_takes_attempts_from_handler(any_storage):
    registry = HandlerRegistry()
    registry.register("patient", PatientHandler())

    job_id = enqueue_job(any_storage, registry, "default", "patient", {})
    assert any_storage.get(job_id).max_attempts == 5

    job_id = enqueue_job(any_storage, registry, "default", "patient", {},
                         EnqueueOptions(max_attempts=2, delay=60))
    job = any_storage.get(job_id)
    assert job.max_attempts == 2
    assert not job.is_claimable()

    job_id = enqueue_job(any_storage, registry, "default", "unknown", {})
    assert any_storage.get(job_id).max_attempts == 3


def test_resolve_options_keeps_caller_options():
    registry = HandlerRegistry()
    registry.register("patient", PatientHandler())
    options = EnqueueOptions(job_id="fixed", delay=5)

    resolved = resolve_options(registry, "patient", options)
    assert resolved.max_attempts == 5
    assert resolved.job_id == "fixed"
    assert resolved.delay_seconds() == 5
    assert options.max_attempts is None
