"""Tests for the configuration module."""

import pytest

from logtrace.config import Config, load_config, load_yaml_config, parse_duration


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "CONFIG_PATH", "SERVICE_NAME", "ENVIRONMENT", "PORT", "QUEUE_URL",
        "QUEUE_STREAM", "QUEUE_SUBJECT", "QUEUE_STORAGE_TYPE", "QUEUE_MAX_AGE",
        "QUEUE_REPLICAS", "QUEUE_RETENTION", "BATCH_SIZE", "BATCH_TIMEOUT",
        "FETCH_WAIT", "BATCH_TIMER_MODE", "TRACING_ENABLED", "LOKI_URL",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    cfg = load_config([])
    assert cfg.service_name == "microservice"
    assert cfg.environment == "development"
    assert cfg.port == 8080
    assert cfg.stream_name == "logs"
    assert cfg.subject == "logs.>"
    assert cfg.storage_type == "file"
    assert cfg.max_age == 168 * 3600
    assert cfg.replicas == 1
    assert cfg.batch_size == 100
    assert cfg.batch_timeout == 1.0
    assert cfg.fetch_wait == 0.5
    assert cfg.loki_url == "http://localhost:3100/loki/api/v1/push"
    assert cfg.retention == "workqueue"
    assert cfg.timer_mode == "age"


def test_publish_subject():
    assert Config(service_name="orders").publish_subject == "logs.orders"


def test_from_env(monkeypatch):
    monkeypatch.setenv("SERVICE_NAME", "orders")
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setenv("PORT", "9090")
    monkeypatch.setenv("QUEUE_STORAGE_TYPE", "memory")
    monkeypatch.setenv("QUEUE_MAX_AGE", "24h")
    monkeypatch.setenv("QUEUE_REPLICAS", "3")
    monkeypatch.setenv("BATCH_TIMEOUT", "250ms")
    monkeypatch.setenv("TRACING_ENABLED", "false")

    cfg = load_config([])
    assert cfg.service_name == "orders"
    assert cfg.environment == "production"
    assert cfg.port == 9090
    assert cfg.storage_type == "memory"
    assert cfg.max_age == 24 * 3600
    assert cfg.replicas == 3
    assert cfg.batch_timeout == pytest.approx(0.25)
    assert cfg.tracing_enabled is False


def test_invalid_env_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("PORT", "not-a-number")
    monkeypatch.setenv("QUEUE_MAX_AGE", "forever")
    monkeypatch.setenv("QUEUE_STORAGE_TYPE", "disk")
    monkeypatch.setenv("QUEUE_RETENTION", "forever")
    monkeypatch.setenv("QUEUE_REPLICAS", "0")
    monkeypatch.setenv("BATCH_SIZE", "-5")
    monkeypatch.setenv("BATCH_TIMER_MODE", "fixed")

    cfg = load_config([])
    assert cfg.port == 8080
    assert cfg.max_age == 168 * 3600
    assert cfg.storage_type == "file"
    assert cfg.retention == "workqueue"
    assert cfg.replicas == 1
    assert cfg.batch_size == 100
    assert cfg.timer_mode == "age"


def test_choice_values_are_normalized(monkeypatch):
    monkeypatch.setenv("QUEUE_STORAGE_TYPE", "Memory")
    monkeypatch.setenv("QUEUE_RETENTION", " limits ")
    monkeypatch.setenv("BATCH_TIMER_MODE", "DEBOUNCE")

    cfg = load_config([])
    assert cfg.storage_type == "memory"
    assert cfg.retention == "limits"
    assert cfg.timer_mode == "debounce"


def test_invalid_yaml_choice_falls_back(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("storage_type: disk\ntimer_mode: fixed\n")

    cfg = load_config(["--config", str(path)])
    assert cfg.storage_type == "file"
    assert cfg.timer_mode == "age"


def test_yaml_then_env_then_cli(tmp_path, monkeypatch):
    path = tmp_path / "config.yml"
    path.write_text("service_name: from-yaml\nbatch_size: 50\nport: 7000\n")
    monkeypatch.setenv("CONFIG_PATH", str(path))
    monkeypatch.setenv("BATCH_SIZE", "60")

    cfg = load_config(["--port", "7100"])
    assert cfg.service_name == "from-yaml"
    assert cfg.batch_size == 60
    assert cfg.port == 7100


def test_missing_yaml_file_is_ignored(tmp_path):
    assert load_yaml_config(str(tmp_path / "missing.yml")) == {}
    assert load_yaml_config(None) == {}


@pytest.mark.parametrize(
    "text, seconds",
    [
        ("168h", 168 * 3600),
        ("1m30s", 90),
        ("500ms", 0.5),
        ("2.5", 2.5),
        ("1h0m10s", 3610),
    ],
)
def test_parse_duration(text, seconds):
    assert parse_duration(text) == pytest.approx(seconds)


@pytest.mark.parametrize("text", ["", "h", "10x", "5s garbage"])
def test_parse_duration_rejects_garbage(text):
    with pytest.raises(ValueError):
        parse_duration(text)
