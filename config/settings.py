"""
Configuration loader for the conversion relay.
Reads settings from a YAML file with environment variable substitution,
then applies the well-known environment overrides on top.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml

logger = structlog.get_logger()


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    environment: str = "development"
    max_body_bytes: int = 10 * 1024 * 1024
    shutdown_grace_period: float = 10.0   # seconds in-flight deliveries get on shutdown


@dataclass
class QueueConfig:
    backend: str = "memory"               # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    name: str = "webhook-tracking"
    concurrency: int = 5                  # worker slots
    max_retries: int = 3                  # attempts before a job is failed
    retry_base_delay: float = 5.0         # seconds, doubled per attempt
    retry_max_delay: float = 300.0
    stall_timeout: float = 30.0           # seconds a job may stay active without ack/nack
    poll_interval: float = 1.0            # idle wait between empty dequeues
    maintenance_interval: float = 5.0     # seconds between stall/retention sweeps
    completed_retention: float = 3600.0   # keep completed jobs for 1 hour
    completed_max_count: int = 1000       # ...and at most this many
    failed_retention: float = 24 * 3600.0


@dataclass
class FacebookConfig:
    access_token: str = ""
    pixel_id: str = ""
    api_version: str = "v18.0"
    api_base: str = "https://graph.facebook.com"
    test_event_code: Optional[str] = None
    timeout: float = 10.0

    @property
    def api_url(self) -> str:
        return f"{self.api_base.rstrip('/')}/{self.api_version}"


@dataclass
class WebhookConfig:
    secret: Optional[str] = None


@dataclass
class RouterConfig:
    default_destination: str = "facebook"


@dataclass
class Settings:
    app_name: str = "Webhook Tracking API"
    version: str = "1.0.0"
    log_level: str = "INFO"
    server: ServerConfig = field(default_factory=ServerConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    facebook: FacebookConfig = field(default_factory=FacebookConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    router: RouterConfig = field(default_factory=RouterConfig)

    @property
    def is_production(self) -> bool:
        return self.server.environment == "production"


_settings: Optional[Settings] = None


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


def _merge_section(section: Any, raw: dict[str, Any]) -> None:
    """Copy known keys from a YAML mapping onto a config dataclass."""
    for key, value in (raw or {}).items():
        if hasattr(section, key):
            setattr(section, key, value)
        else:
            logger.warning("unknown_config_key", section=type(section).__name__, key=key)


def _redis_url_from_parts(host: str, port: str, password: Optional[str]) -> str:
    auth = f":{password}@" if password else ""
    return f"redis://{auth}{host}:{port}"


def apply_env_overrides(settings: Settings, environ: Optional[dict[str, str]] = None) -> Settings:
    """Apply environment variables over file-based settings."""
    env = os.environ if environ is None else environ

    if env.get("PORT"):
        settings.server.port = int(env["PORT"])
    if env.get("ENVIRONMENT"):
        settings.server.environment = env["ENVIRONMENT"]
    if env.get("LOG_LEVEL"):
        settings.log_level = env["LOG_LEVEL"].upper()

    if env.get("REDIS_URL"):
        settings.queue.redis_url = env["REDIS_URL"]
    elif env.get("REDIS_HOST"):
        settings.queue.redis_url = _redis_url_from_parts(
            env["REDIS_HOST"],
            env.get("REDIS_PORT", "6379"),
            env.get("REDIS_PASSWORD"),
        )
    if env.get("QUEUE_BACKEND"):
        settings.queue.backend = env["QUEUE_BACKEND"]
    if env.get("QUEUE_CONCURRENCY"):
        settings.queue.concurrency = int(env["QUEUE_CONCURRENCY"])
    if env.get("QUEUE_MAX_RETRIES"):
        settings.queue.max_retries = int(env["QUEUE_MAX_RETRIES"])

    if env.get("FB_ACCESS_TOKEN"):
        settings.facebook.access_token = env["FB_ACCESS_TOKEN"]
    if env.get("FB_PIXEL_ID"):
        settings.facebook.pixel_id = env["FB_PIXEL_ID"]
    if env.get("FB_API_VERSION"):
        settings.facebook.api_version = env["FB_API_VERSION"]
    if env.get("FB_TEST_EVENT_CODE"):
        settings.facebook.test_event_code = env["FB_TEST_EVENT_CODE"]

    if env.get("WEBHOOK_SECRET"):
        settings.webhook.secret = env["WEBHOOK_SECRET"]

    return settings


def validate_settings(settings: Settings) -> list[str]:
    """Log and return warnings for critical settings missing in production."""
    warnings = []
    if not settings.is_production:
        return warnings
    if not settings.facebook.access_token:
        warnings.append("FB_ACCESS_TOKEN not configured")
    if not settings.facebook.pixel_id:
        warnings.append("FB_PIXEL_ID not configured")
    for warning in warnings:
        logger.warning("config_warning", message=warning)
    return warnings


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file, then environment overrides."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "RELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.version = raw.get("version", settings.version)
        settings.log_level = str(raw.get("log_level", settings.log_level)).upper()

        for name in ("server", "queue", "facebook", "webhook", "router"):
            if name in raw:
                _merge_section(getattr(settings, name), raw[name])

    apply_env_overrides(settings)
    validate_settings(settings)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
