import json

import pytest

from jobpool.config.settings import PoolConfig, get_value, load_config, save_config, set_value


def test_load_config_creates_defaults(tmp_path):
    path = tmp_path / "nested" / "config.json"
    config = load_config(str(path))

    assert path.exists()
    assert config.max_workers == 5
    assert config.jobs_per_worker == 10
    assert config.queues == ["default"]
    assert config.worker.poll_interval == 1.0
    assert config.worker.heartbeat_interval == 30
    assert config.worker.max_memory == 128 * 1024 * 1024
    assert config.worker.drain_mode == "finish"
    assert json.loads(path.read_text())["worker"]["max_execution_time"] == 3600


def test_save_and_reload(tmp_path):
    path = str(tmp_path / "config.json")
    save_config(PoolConfig(max_workers=2, queues=["high", "low"]), path)

    config = load_config(path)
    assert config.max_workers == 2
    assert config.queues == ["high", "low"]


def test_get_value_dotted():
    config = PoolConfig()
    assert get_value(config, "max_workers") == 5
    assert get_value(config, "worker.drain_mode") == "finish"
    with pytest.raises(KeyError):
        get_value(config, "worker.missing")
    with pytest.raises(KeyError):
        get_value(config, "max_workers.nested")


def test_set_value_parses_json():
    config = PoolConfig()
    assert set_value(config, "max_workers", "3").max_workers == 3
    assert set_value(config, "auto_restart", "false").auto_restart is False
    assert set_value(config, "queues", '["a", "b"]').queues == ["a", "b"]
    assert set_value(config, "worker.heartbeat_interval", "5").worker.heartbeat_interval == 5
    assert set_value(config, "log_level", "DEBUG").log_level == "DEBUG"
    # The original is left untouched
    assert config.max_workers == 5


def test_set_value_validates():
    config = PoolConfig()
    with pytest.raises(KeyError):
        set_value(config, "unknown", "1")
    with pytest.raises(KeyError):
        set_value(config, "max_workers.nested", "1")
    with pytest.raises(ValueError):
        set_value(config, "max_workers", "0")
    with pytest.raises(ValueError):
        set_value(config, "worker.drain_mode", "later")


def test_lease_seconds():
    config = PoolConfig(lease_multiplier=4)
    assert config.lease_seconds() == 120


def test_alert_thresholds():
    config = PoolConfig()
    assert config.alerts.max_queue_size == 1000
    assert config.alerts.max_failed_jobs_percentage == 10
    assert config.alerts.min_worker_health_percentage == 80
    assert config.alerts.max_avg_processing_time == 30

    updated = set_value(config, "alerts.max_queue_size", "50")
    assert get_value(updated, "alerts.max_queue_size") == 50
    with pytest.raises(ValueError):
        set_value(config, "alerts.max_failed_jobs_percentage", "150")
