"""
Configuration loader for the dispatch service.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./dispatch.db"               # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend


@dataclass
class JobQueueConfig:
    poll_interval_seconds: float = 5.0   # how often the dispatcher looks for eligible jobs
    batch_size: int = 10                 # max jobs claimed per poll
    worker_pool_size: int = 5            # max jobs executing concurrently
    default_priority: int = 5
    default_max_attempts: int = 3
    backoff_policy: str = "exponential"  # "exponential" | "fixed"
    backoff_base_seconds: float = 30.0
    backoff_max_seconds: float = 900.0
    stale_timeout_seconds: float = 3600.0       # running longer than this → recovered on start
    retention_days: int = 7
    retention_sweep_interval_seconds: float = 3600.0
    shutdown_timeout_seconds: float = 30.0


@dataclass
class RateLimitConfig:
    max_attempts: int = 5
    block_duration_seconds: float = 900.0     # 15 minutes
    window_seconds: float = 300.0             # 5 minutes
    cleanup_interval_seconds: float = 1800.0  # 30 minutes


@dataclass
class GatewayConfig:
    base_url: str = ""                  # session manager / dashboard REST API
    api_key: str = ""
    timeout: float = 30.0
    endpoints: dict[str, str] = field(default_factory=dict)


@dataclass
class AuthConfig:
    admin_username: str = "admin"
    admin_password: str = ""

    @property
    def login_enabled(self) -> bool:
        # an unset ${ADMIN_PASSWORD} stays literal after substitution
        return bool(self.admin_password) and not self.admin_password.startswith("${")


@dataclass
class Settings:
    app_name: str = "MultisessionDispatch"
    debug: bool = False
    secret_key: str = "change-me"
    timezone: str = "UTC"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    job_queue: JobQueueConfig = field(default_factory=JobQueueConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)


# YAML top-level key → Settings attribute holding that section
SECTIONS: dict[str, type] = {
    "database": DatabaseConfig,
    "job_queue": JobQueueConfig,
    "rate_limit": RateLimitConfig,
    "gateway": GatewayConfig,
    "auth": AuthConfig,
}
SCALARS = ("app_name", "debug", "secret_key", "timezone")

ENV_PATTERN = re.compile(r"\$\{(\w+)\}")

_settings: Optional[Settings] = None


def _expand_env(obj: Any) -> Any:
    """Replace ${VAR} in every string; unset variables are left as written."""
    if isinstance(obj, str):
        return ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), m.group(0)), obj)
    if isinstance(obj, dict):
        return {k: _expand_env(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env(v) for v in obj]
    return obj


def _section(cls, raw: Optional[dict[str, Any]]):
    """Build a config dataclass from a mapping, ignoring keys it does not define."""
    raw = raw or {}
    return cls(**{k: v for k, v in raw.items() if k in cls.__dataclass_fields__})


def default_config_path() -> str:
    return os.environ.get("DISPATCH_CONFIG", str(Path(__file__).parent / "settings.yaml"))


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML (missing file → defaults) and cache them."""
    global _settings
    path = Path(config_path or default_config_path())

    raw: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            raw = _expand_env(yaml.safe_load(f) or {})

    settings = Settings(**{k: raw[k] for k in SCALARS if k in raw})
    for key, cls in SECTIONS.items():
        if key in raw:
            setattr(settings, key, _section(cls, raw[key]))

    _settings = settings
    return settings


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
