"""Configuration module: frozen dataclass loaded from YAML, env vars and CLI args."""

import argparse
import logging
import os
import re
from dataclasses import dataclass, fields

import yaml

logger = logging.getLogger(__name__)

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


def _positive_int(value) -> int:
    number = int(value)
    if number < 1:
        raise ValueError(f"must be at least 1, got {number}")
    return number


def _choice(*allowed: str):
    """Parser accepting only one of *allowed* (case-insensitive)."""
    def parse(value) -> str:
        text = str(value).strip().lower()
        if text not in allowed:
            raise ValueError(f"expected one of {', '.join(allowed)}")
        return text
    return parse


def parse_duration(value) -> float:
    """Parse a duration into seconds.

    Accepts plain numbers (seconds) and Go-style strings such as ``168h``,
    ``1m30s`` or ``500ms``. Raises ValueError for anything else.
    """
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


@dataclass(frozen=True)
class Config:
    service_name: str = "microservice"
    environment: str = "development"
    host: str = "0.0.0.0"
    port: int = 8080

    # Durable queue (Redis Streams)
    queue_url: str = "redis://localhost:6379/0"
    queue_timeout: float = 2.0
    stream_name: str = "logs"
    subject: str = "logs.>"
    retention: str = "workqueue"
    storage_type: str = "file"
    max_age: float = 7 * 24 * 3600.0
    replicas: int = 1

    # Forwarder
    consumer_name: str = "loki-consumer"
    batch_size: int = 100
    batch_timeout: float = 1.0
    fetch_wait: float = 0.5
    timer_mode: str = "age"

    tracing_endpoint: str = "localhost:4317"
    tracing_enabled: bool = True
    loki_url: str = "http://localhost:3100/loki/api/v1/push"
    log_level: str = "INFO"

    @property
    def publish_subject(self) -> str:
        return f"logs.{self.service_name}"


# field name -> (env var, parser)
_ENV_FIELDS = {
    "service_name": ("SERVICE_NAME", str),
    "environment": ("ENVIRONMENT", str),
    "host": ("HOST", str),
    "port": ("PORT", int),
    "queue_url": ("QUEUE_URL", str),
    "queue_timeout": ("QUEUE_TIMEOUT", parse_duration),
    "stream_name": ("QUEUE_STREAM", str),
    "subject": ("QUEUE_SUBJECT", str),
    "retention": ("QUEUE_RETENTION", _choice("workqueue", "limits")),
    "storage_type": ("QUEUE_STORAGE_TYPE", _choice("file", "memory")),
    "max_age": ("QUEUE_MAX_AGE", parse_duration),
    "replicas": ("QUEUE_REPLICAS", _positive_int),
    "consumer_name": ("CONSUMER_NAME", str),
    "batch_size": ("BATCH_SIZE", _positive_int),
    "batch_timeout": ("BATCH_TIMEOUT", parse_duration),
    "fetch_wait": ("FETCH_WAIT", parse_duration),
    "timer_mode": ("BATCH_TIMER_MODE", _choice("age", "debounce")),
    "tracing_endpoint": ("TRACING_ENDPOINT", str),
    "tracing_enabled": ("TRACING_ENABLED", _parse_bool),
    "loki_url": ("LOKI_URL", str),
    "log_level": ("LOG_LEVEL", str),
}


def load_yaml_config(path: str | None) -> dict:
    """Load config overrides from a YAML file. Returns empty dict if no path."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}
    if not isinstance(data, dict):
        logger.warning("Config file %s is not a mapping, ignoring it", path)
        return {}
    logger.info("Loaded YAML config from %s", path)
    return data


def _convert(name: str, raw, default):
    """Convert *raw* with the field's parser, falling back to *default*."""
    _, parser = _ENV_FIELDS[name]
    if raw is None or raw == "":
        return default
    if parser is _parse_bool:
        return raw if isinstance(raw, bool) else _parse_bool(str(raw))
    try:
        return parser(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid value %r for %s, using %r", raw, name, default)
        return default


def load_config(argv: list[str] | None = None) -> Config:
    """Build Config from defaults <- YAML file <- env vars <- CLI args.

    The YAML path comes from ``--config`` or the ``CONFIG_PATH`` env var.
    Pass argv for testability; when None, argparse reads sys.argv.
    """
    parser = argparse.ArgumentParser(description="logtrace")
    parser.add_argument("--config", type=str, default=None)
    parser.add_argument("--service-name", type=str, default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--queue-url", type=str, default=None)
    parser.add_argument("--loki-url", type=str, default=None)
    parser.add_argument("--batch-size", type=_positive_int, default=None)
    parser.add_argument("--batch-timeout", type=parse_duration, default=None)
    parser.add_argument("--fetch-wait", type=parse_duration, default=None)
    parser.add_argument("--log-level", type=str, default=None)
    args = parser.parse_args(argv)

    yaml_data = load_yaml_config(args.config or os.environ.get("CONFIG_PATH"))

    kwargs = {}
    for f in fields(Config):
        value = f.default
        if f.name in yaml_data:
            value = _convert(f.name, yaml_data[f.name], value)
        env_name, _ = _ENV_FIELDS[f.name]
        if env_name in os.environ:
            value = _convert(f.name, os.environ[env_name], value)
        cli_value = getattr(args, f.name, None)
        if cli_value is not None:
            value = cli_value
        kwargs[f.name] = value

    return Config(**kwargs)
