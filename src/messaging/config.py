"""
messaging/config.py

Environment-driven settings for the broker client and the worker process.

All values are read once into an immutable ``Settings`` object which the
composition root hands to every component that needs it.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping
from urllib.parse import urlparse

DEFAULT_RABBITMQ_URL = "amqp://localhost:5672"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Settings:
    rabbitmq_url: str = DEFAULT_RABBITMQ_URL
    reconnect_delay: float = 5.0
    reconnect_max_delay: float = 60.0
    reconnect_alert_after: int = 10
    connect_timeout: float = 30.0
    heartbeat: int = 60
    prefetch_count: int = 1
    dead_letter_enabled: bool = True
    dead_letter_suffix: str = ".dlq"
    shutdown_timeout: float = 30.0
    health_port: int = 8001
    log_level: str = "INFO"
    database_url: str | None = None


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw in (None, ""):
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {raw!r}")
    return value


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {raw!r}")
    return value


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw in (None, ""):
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _env_url(env: Mapping[str, str], name: str, default: str) -> str:
    raw = env.get(name) or default
    parts = urlparse(raw)
    # Never echo the URL itself; it usually carries credentials.
    if parts.scheme not in ("amqp", "amqps"):
        raise ValueError(f"{name} must be an amqp:// or amqps:// URL, got scheme {parts.scheme!r}")
    try:
        _ = parts.port
    except ValueError as exc:
        raise ValueError(f"{name} has an invalid port") from exc
    return raw


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """
    Build ``Settings`` from environment variables.

    Args:
        environ: Mapping to read from; defaults to ``os.environ``.

    Raises:
        ValueError: if a numeric or boolean variable cannot be parsed, or
            RABBITMQ_URL is not an amqp:// or amqps:// URL.
    """
    env = os.environ if environ is None else environ

    return Settings(
        rabbitmq_url=_env_url(env, "RABBITMQ_URL", DEFAULT_RABBITMQ_URL),
        reconnect_delay=_env_float(env, "RABBITMQ_RECONNECT_DELAY", 5.0),
        reconnect_max_delay=_env_float(env, "RABBITMQ_RECONNECT_MAX_DELAY", 60.0),
        reconnect_alert_after=_env_int(env, "RABBITMQ_RECONNECT_ALERT_AFTER", 10),
        connect_timeout=_env_float(env, "RABBITMQ_CONNECT_TIMEOUT", 30.0),
        heartbeat=_env_int(env, "RABBITMQ_HEARTBEAT", 60),
        prefetch_count=_env_int(env, "RABBITMQ_PREFETCH", 1),
        dead_letter_enabled=_env_bool(env, "TASKQUEUE_DEAD_LETTER", True),
        shutdown_timeout=_env_float(env, "WORKER_SHUTDOWN_TIMEOUT", 30.0),
        health_port=_env_int(env, "WORKER_HEALTH_PORT", 8001),
        log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        database_url=env.get("DATABASE_URL") or None,
    )
