from datetime import datetime, timezone
from typing import List, Optional
from pydantic import BaseModel, Field


class Heartbeat(BaseModel):
    """Liveness record a worker persists at most once per heartbeat interval.

    ``timestamp`` is a unix epoch in whole seconds so the record stays JSON
    friendly for dashboards reading the heartbeat store directly.
    """

    worker_id: str
    timestamp: int
    memory_usage: int = 0
    jobs_processed: int = 0
    current_job: Optional[str] = None
    queues: List[str] = Field(default_factory=list)

    @property
    def received_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    def age(self, now: Optional[float] = None) -> float:
        now = now if now is not None else datetime.now(timezone.utc).timestamp()
        return now - self.timestamp

    def is_healthy(self, heartbeat_interval: float, max_memory: int, now: Optional[float] = None) -> bool:
        if self.age(now) > 2 * heartbeat_interval:
            return False
        if self.memory_usage > max_memory:
            return False
        return True
