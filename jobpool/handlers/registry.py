import threading
from typing import Any, Dict, List, Optional

from ..models.job import DEFAULT_MAX_ATTEMPTS, EnqueueOptions
from ..storage.base import QueueStorage
from .base import Handler
from .errors import HandlerNotFound


class HandlerRegistry:
    """Explicit mapping from a job type string to the handler that runs it.

    Handlers are registered at startup; nothing is resolved from the type
    name at runtime. Once workers start the registry is usually frozen.
    """

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}
        self._frozen = False
        self._lock = threading.Lock()

    def register(self, job_type: str, handler: Handler) -> None:
        if not job_type:
            raise ValueError("Job type cannot be empty")
        if not isinstance(handler, Handler):
            raise TypeError(f"Handler for '{job_type}' must be a Handler instance")
        with self._lock:
            if self._frozen:
                raise RuntimeError(
                    f"Cannot register '{job_type}': handler registry is frozen"
                )
            self._handlers[job_type] = handler

    def get(self, job_type: str) -> Handler:
        handler = self._handlers.get(job_type)
        if handler is None:
            raise HandlerNotFound(job_type)
        return handler

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers

    def types(self) -> List[str]:
        return sorted(self._handlers)

    def freeze(self) -> None:
        self._frozen = True

    def is_frozen(self) -> bool:
        return self._frozen


def resolve_options(registry: HandlerRegistry, job_type: str,
                    options: Optional[EnqueueOptions] = None) -> EnqueueOptions:
    """Fill ``max_attempts`` from the handler registered for ``job_type``.

    An explicit ``max_attempts`` always wins. Types with no registered
    handler get the storage default.
    """
    options = options or EnqueueOptions()
    if options.max_attempts is not None:
        return options
    max_attempts = DEFAULT_MAX_ATTEMPTS
    if job_type in registry:
        max_attempts = registry.get(job_type).max_attempts
    return options.model_copy(update={"max_attempts": max_attempts})


def enqueue_job(storage: QueueStorage, registry: HandlerRegistry, queue: str, job_type: str,
                payload: Dict[str, Any], options: Optional[EnqueueOptions] = None) -> str:
    return storage.enqueue(queue, job_type, payload, resolve_options(registry, job_type, options))
