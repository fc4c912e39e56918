import os
from dataclasses import dataclass

from .errors import ConfigError

DB_FILE = os.environ.get("NOTIFYQ_DB", "notifyq.db")

DEFAULT_CONFIG = {
    "max_attempts": "3",
    "delivery_url": "noop://delivery",
    "delivery_timeout_seconds": "10",
    "worker_pause_ms": "100",
    "completed_ttl_seconds": "86400",   # 24h
    "scan_interval_seconds": "30",
    "orphan_grace_seconds": "300",
    "backend": "sqlite",
    "redis_url": "redis://localhost:6379/0",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

INT_CONFIG_KEYS = {
    "max_attempts",
    "delivery_timeout_seconds",
    "worker_pause_ms",
    "completed_ttl_seconds",
    "scan_interval_seconds",
    "orphan_grace_seconds",
}

BACKENDS = ("sqlite", "redis")


@dataclass(frozen=True)
class Settings:
    max_attempts: int = 3
    delivery_url: str = "noop://delivery"
    delivery_timeout_seconds: int = 10
    worker_pause_ms: int = 100
    completed_ttl_seconds: int = 86400
    scan_interval_seconds: int = 30
    orphan_grace_seconds: int = 300
    backend: str = "sqlite"
    redis_url: str = "redis://localhost:6379/0"
    db_path: str = DB_FILE

    @property
    def worker_pause_seconds(self) -> float:
        return self.worker_pause_ms / 1000.0


def validate_config_value(key: str, value: str) -> str:
    """Check a single config entry; returns the normalised string value."""
    if key not in ALLOWED_CONFIG_KEYS:
        raise ConfigError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    value = str(value).strip()
    if key in INT_CONFIG_KEYS:
        try:
            number = int(value)
        except ValueError:
            raise ConfigError(f"{key} must be an integer.")
        if number < 0 or (key == "max_attempts" and number < 1):
            raise ConfigError(f"{key} must be positive.")
        return str(number)
    if key == "backend" and value not in BACKENDS:
        raise ConfigError(f"backend must be one of: {', '.join(BACKENDS)}")
    if not value:
        raise ConfigError(f"{key} cannot be empty.")
    return value


def settings_from_mapping(values, db_path: str = DB_FILE) -> Settings:
    merged = dict(DEFAULT_CONFIG)
    merged.update({k: v for k, v in values.items() if k in ALLOWED_CONFIG_KEYS})
    kwargs = {}
    for key, raw in merged.items():
        kwargs[key] = int(raw) if key in INT_CONFIG_KEYS else raw
    return Settings(db_path=db_path, **kwargs)
