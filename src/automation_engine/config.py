# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Engine settings loaded from an INI file with environment fallbacks."""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from pathlib import Path

from .providers import DEFAULT_PROVIDER

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class EngineSettings:
    db_path: str = "/data/automation_engine.db"
    http_host: str = "0.0.0.0"
    http_port: int = 8000
    api_token: str | None = None
    default_provider: str = DEFAULT_PROVIDER
    send_timeout_seconds: float = 30.0
    max_concurrency: int = 4
    state_page_size: int = 50
    circuit_breaker_cooldown_seconds: int = 1800
    scheduler_active: bool = False
    run_interval_seconds: float = 300.0
    run_deadline_seconds: float | None = None
    log_level: str = "INFO"
    log_delivery_activity: bool = False


def load_settings(path: str | os.PathLike[str] | None = None) -> EngineSettings:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with AE_):
      AE_CONFIG - Path to config.ini file (default: config.ini)
      AE_LOG_LEVEL - Logging level (default: INFO)
      AE_DB_PATH - Database path or PostgreSQL URL (default: /data/automation_engine.db)
      AE_HOST - Server host (default: 0.0.0.0)
      AE_PORT - Server port (default: 8000)
      AE_API_TOKEN - API authentication token
      AE_DEFAULT_PROVIDER - Platform default provider (default: brevo)
      AE_SEND_TIMEOUT - Upper bound for one send in seconds (default: 30)
      AE_MAX_CONCURRENCY - Tenants processed in parallel (default: 4)
      AE_STATE_PAGE_SIZE - Active states read per query (default: 50)
      AE_CIRCUIT_BREAKER_COOLDOWN - Breaker cooldown in seconds (default: 1800)
      AE_SCHEDULER_ACTIVE - Run periodically inside ``serve`` (default: False)
      AE_RUN_INTERVAL - Seconds between scheduled runs (default: 300)
      AE_RUN_DEADLINE - Seconds after which a run starts no new tenant
      AE_LOG_DELIVERY_ACTIVITY - Log successful sends at INFO (default: False)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token
      [engine] default_provider, send_timeout_seconds, max_concurrency,
               state_page_size, circuit_breaker_cooldown_seconds
      [scheduler] active, interval_seconds, deadline_seconds
      [logging] level, delivery_activity
    """
    config_path = Path(path or os.getenv("AE_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return int(value)

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return float(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool = False) -> bool:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in _TRUE:
            return True
        if normalized in _FALSE:
            return False
        return default

    defaults = EngineSettings()
    db_path = get("storage", "db_path", os.getenv("AE_DB_PATH", defaults.db_path)) or defaults.db_path
    token = get("server", "api_token", os.getenv("AE_API_TOKEN"))
    if isinstance(token, str):
        token = token.strip() or None

    return EngineSettings(
        db_path=os.path.expanduser(db_path),
        http_host=get("server", "host", os.getenv("AE_HOST", defaults.http_host)) or defaults.http_host,
        http_port=get_int("server", "port", os.getenv("AE_PORT"), default=defaults.http_port),
        api_token=token,
        default_provider=(
            get("engine", "default_provider", os.getenv("AE_DEFAULT_PROVIDER")) or defaults.default_provider
        ).strip(),
        send_timeout_seconds=get_float(
            "engine", "send_timeout_seconds", os.getenv("AE_SEND_TIMEOUT"), default=defaults.send_timeout_seconds
        ),
        max_concurrency=get_int(
            "engine", "max_concurrency", os.getenv("AE_MAX_CONCURRENCY"), default=defaults.max_concurrency
        ),
        state_page_size=get_int(
            "engine",
            "state_page_size",
            os.getenv("AE_STATE_PAGE_SIZE"),
            default=defaults.state_page_size,
        ),
        circuit_breaker_cooldown_seconds=get_int(
            "engine",
            "circuit_breaker_cooldown_seconds",
            os.getenv("AE_CIRCUIT_BREAKER_COOLDOWN"),
            default=defaults.circuit_breaker_cooldown_seconds,
        ),
        scheduler_active=get_bool("scheduler", "active", os.getenv("AE_SCHEDULER_ACTIVE"), default=False),
        run_interval_seconds=get_float(
            "scheduler", "interval_seconds", os.getenv("AE_RUN_INTERVAL"), default=defaults.run_interval_seconds
        ),
        run_deadline_seconds=get_float("scheduler", "deadline_seconds", os.getenv("AE_RUN_DEADLINE")),
        log_level=(get("logging", "level", os.getenv("AE_LOG_LEVEL")) or defaults.log_level).upper(),
        log_delivery_activity=get_bool(
            "logging", "delivery_activity", os.getenv("AE_LOG_DELIVERY_ACTIVITY"), default=False
        ),
    )


__all__ = ["EngineSettings", "load_settings"]
