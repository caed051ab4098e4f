import subprocess
from typing import Any, Dict

from .base import Handler, JobContext, require_keys
from .errors import JobTimeoutError, TransientError
from .registry import HandlerRegistry


class ShellCommandHandler(Handler):
    """Runs ``payload["command"]`` through the shell.

    The subprocess is killed at the job's deadline, so unlike arbitrary
    Python handlers this one can always be preempted.
    """

    max_execution_time = 60

    def validate(self, payload: Dict[str, Any]) -> bool:
        command = payload.get("command") if isinstance(payload, dict) else None
        return isinstance(command, str) and bool(command.strip())

    def execute(self, payload: Dict[str, Any], context: JobContext) -> Any:
        command = require_keys(payload, "command")["command"]
        process = subprocess.Popen(
            command,
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True
        )

        try:
            stdout, stderr = process.communicate(timeout=context.remaining())
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()
            raise JobTimeoutError(f"Command timed out: {command}")

        if process.returncode != 0:
            raise TransientError(
                f"exit_code={process.returncode} {stderr.strip() or 'Unknown error'}"[:500]
            )
        return {"exit_code": process.returncode, "output": stdout.strip()}


class EchoHandler(Handler):
    max_execution_time = 5

    def execute(self, payload: Dict[str, Any], context: JobContext) -> Any:
        return payload


def default_registry() -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register("shell", ShellCommandHandler())
    registry.register("echo", EchoHandler())
    return registry
