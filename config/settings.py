"""
Configuration loader for the dispatch core.
Reads settings from YAML file with environment variable substitution.

Settings are loaded explicitly and handed to build_context(); nothing in
the codebase reaches for a global settings object.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

MESSAGE_CLASSES = ("email", "sms")


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./dispatch.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                # "sql" | "memory" | "file"
    store_file_dir: str = "./data"               # directory for file backend


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" | "sql" | "redis"
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "dispatch"
    consumer_group: str = "dispatch-workers"
    visibility_timeout: float = 90.0    # seconds a dequeued job stays leased
    block_timeout: float = 2.0          # seconds a worker blocks in dequeue
    poll_interval: float = 0.5          # sql backend polling period
    delayed_promote_interval: float = 5.0


@dataclass
class DispatchConfig:
    concurrency: dict[str, int] = field(
        default_factory=lambda: {cls: 5 for cls in MESSAGE_CLASSES}
    )
    delivery_timeout: float = 30.0
    shutdown_timeout: float = 30.0

    def concurrency_for(self, message_class: str) -> int:
        return int(self.concurrency.get(message_class, 5))


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0


@dataclass
class QuotaConfig:
    backend: str = "memory"             # "memory" | "sql" | "redis"
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "dispatch"
    window: str = "day"                 # "minute" | "hour" | "day"
    default_limit: int = 200
    tenant_limits: dict[str, int] = field(default_factory=dict)


@dataclass
class ProviderConfig:
    provider: str = "mock"              # email: smtp | mock, sms: twilio | mock
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class StartupConfig:
    connect_attempts: int = 5
    connect_backoff_max: float = 10.0


@dataclass
class Settings:
    app_name: str = "MessageDispatch"
    debug: bool = False
    log_level: str = "INFO"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    providers: dict[str, ProviderConfig] = field(
        default_factory=lambda: {cls: ProviderConfig() for cls in MESSAGE_CLASSES}
    )
    startup: StartupConfig = field(default_factory=StartupConfig)


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def default_config_path() -> str:
    return os.environ.get(
        "DISPATCH_CONFIG",
        str(Path(__file__).parent / "settings.yaml"),
    )


def settings_from_dict(raw: dict[str, Any]) -> Settings:
    """Build Settings from an already-parsed mapping."""
    raw = _process_values(raw or {})
    settings = Settings()

    settings.app_name = raw.get("app_name", settings.app_name)
    settings.debug = bool(raw.get("debug", settings.debug))
    settings.log_level = str(raw.get("log_level", settings.log_level)).upper()

    if "database" in raw:
        db = raw["database"] or {}
        settings.database = DatabaseConfig(
            url=db.get("url", settings.database.url),
            store_backend=db.get("store_backend", settings.database.store_backend),
            store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
        )

    if "queue" in raw:
        q = raw["queue"] or {}
        defaults = QueueConfig()
        settings.queue = QueueConfig(
            backend=q.get("backend", defaults.backend),
            redis_url=q.get("redis_url", defaults.redis_url),
            key_prefix=q.get("key_prefix", defaults.key_prefix),
            consumer_group=q.get("consumer_group", defaults.consumer_group),
            visibility_timeout=float(q.get("visibility_timeout", defaults.visibility_timeout)),
            block_timeout=float(q.get("block_timeout", defaults.block_timeout)),
            poll_interval=float(q.get("poll_interval", defaults.poll_interval)),
            delayed_promote_interval=float(
                q.get("delayed_promote_interval", defaults.delayed_promote_interval)
            ),
        )

    if "dispatch" in raw:
        d = raw["dispatch"] or {}
        defaults = DispatchConfig()
        concurrency = dict(defaults.concurrency)
        configured = d.get("concurrency", {})
        if isinstance(configured, int):
            concurrency = {cls: configured for cls in MESSAGE_CLASSES}
        else:
            concurrency.update({k: int(v) for k, v in configured.items()})
        settings.dispatch = DispatchConfig(
            concurrency=concurrency,
            delivery_timeout=float(d.get("delivery_timeout", defaults.delivery_timeout)),
            shutdown_timeout=float(d.get("shutdown_timeout", defaults.shutdown_timeout)),
        )

    if "retry" in raw:
        r = raw["retry"] or {}
        defaults = RetryConfig()
        settings.retry = RetryConfig(
            max_attempts=int(r.get("max_attempts", defaults.max_attempts)),
            base_delay=float(r.get("base_delay", defaults.base_delay)),
            multiplier=float(r.get("multiplier", defaults.multiplier)),
            max_delay=float(r.get("max_delay", defaults.max_delay)),
        )

    if "quota" in raw:
        qt = raw["quota"] or {}
        defaults = QuotaConfig()
        settings.quota = QuotaConfig(
            backend=qt.get("backend", defaults.backend),
            redis_url=qt.get("redis_url", defaults.redis_url),
            key_prefix=qt.get("key_prefix", defaults.key_prefix),
            window=qt.get("window", defaults.window),
            default_limit=int(qt.get("default_limit", defaults.default_limit)),
            tenant_limits={
                str(k): int(v) for k, v in (qt.get("tenant_limits") or {}).items()
            },
        )

    if "providers" in raw:
        for cls_name, p in (raw["providers"] or {}).items():
            p = p or {}
            settings.providers[cls_name] = ProviderConfig(
                provider=p.get("provider", "mock"),
                credentials=p.get("credentials", {}) or {},
            )

    if "startup" in raw:
        s = raw["startup"] or {}
        defaults = StartupConfig()
        settings.startup = StartupConfig(
            connect_attempts=int(s.get("connect_attempts", defaults.connect_attempts)),
            connect_backoff_max=float(s.get("connect_backoff_max", defaults.connect_backoff_max)),
        )

    return settings


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file; defaults when the file is absent."""
    if config_path is None:
        config_path = default_config_path()

    raw: dict[str, Any] = {}
    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    return settings_from_dict(raw)
