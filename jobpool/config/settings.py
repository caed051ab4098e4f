import json
import os
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

# Store configuration in ~/.jobpool/config.json
CONFIG_PATH = os.environ.get(
    "JOBPOOL_CONFIG", os.path.join(os.path.expanduser("~"), ".jobpool", "config.json")
)


class WorkerConfig(BaseModel):
    poll_interval: float = Field(default=1.0, gt=0)  # seconds between empty claims
    max_memory: int = Field(default=128 * 1024 * 1024, gt=0)  # bytes
    max_execution_time: float = Field(default=3600, gt=0)  # worker lifetime, seconds
    heartbeat_interval: float = Field(default=30, gt=0)
    drain_mode: Literal["finish", "abort"] = "finish"


class AlertThresholds(BaseModel):
    max_queue_size: int = Field(default=1000, ge=1)  # waiting jobs per queue
    max_failed_jobs_percentage: float = Field(default=10, ge=0, le=100)
    min_worker_health_percentage: float = Field(default=80, ge=0, le=100)
    max_avg_processing_time: float = Field(default=30, gt=0)  # seconds


class PoolConfig(BaseModel):
    max_workers: int = Field(default=5, ge=1)
    jobs_per_worker: int = Field(default=10, ge=1)
    queues: List[str] = Field(default_factory=lambda: ["default"], min_length=1)
    auto_restart: bool = True
    health_check_interval: float = Field(default=60, gt=0)
    lease_multiplier: float = Field(default=3, gt=0)
    database_url: Optional[str] = None
    log_level: str = "INFO"
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    alerts: AlertThresholds = Field(default_factory=AlertThresholds)

    def lease_seconds(self) -> float:
        return self.lease_multiplier * self.worker.heartbeat_interval


def load_config(path: str = None) -> PoolConfig:
    path = path or CONFIG_PATH
    if not os.path.exists(path):
        config = PoolConfig()
        save_config(config, path)
        return config
    with open(path, 'r') as f:
        return PoolConfig.model_validate(json.load(f))


def save_config(config: PoolConfig, path: str = None):
    path = path or CONFIG_PATH
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, 'w') as f:
        json.dump(config.model_dump(), f, indent=2)


def get_value(config: PoolConfig, key: str) -> Any:
    node: Any = config.model_dump()
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            raise KeyError(key)
        node = node[part]
    return node


def set_value(config: PoolConfig, key: str, raw: str) -> PoolConfig:
    """Return a new config with ``key`` set, validated by pydantic.

    ``raw`` is parsed as JSON when possible so ``3``, ``true`` and
    ``["a","b"]`` keep their types; anything else is taken as a string.
    """
    try:
        value = json.loads(raw)
    except ValueError:
        value = raw

    data = config.model_dump()
    node = data
    parts = key.split(".")
    for part in parts[:-1]:
        if not isinstance(node.get(part), dict):
            raise KeyError(key)
        node = node[part]
    if parts[-1] not in node:
        raise KeyError(key)
    node[parts[-1]] = value

    try:
        return PoolConfig.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Invalid value for {key}: {e.errors()[0]['msg']}") from e
