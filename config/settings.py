"""
Configuration loader for the programs scheduler.
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
    url: str = "sqlite:///./programs.db"        # postgresql:// | sqlite://
    store_backend: str = "sql"                   # "sql" | "memory" (development only)


@dataclass
class NotificationConfig:
    base_url: str = ""                  # notification service root; empty → logging gateway
    timeout_seconds: float = 10.0
    connect_retries: int = 3            # only for errors raised before the request left


@dataclass
class SchedulerConfig:
    enabled: bool = True
    interval_ms: int = 60_000
    crm_batch_size: int = 50
    application_reminder_age_minutes: int = 24 * 60
    application_reminder_limit: int = 100
    session_reminder_horizon_minutes: int = 24 * 60
    session_reminder_lookback_minutes: int = 15
    session_reminder_limit: int = 250


@dataclass
class CrmSyncConfig:
    default_max_attempts: int = 5


@dataclass
class Settings:
    app_name: str = "ProgramsScheduler"
    debug: bool = False
    timezone: str = "UTC"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    crm: CrmSyncConfig = field(default_factory=CrmSyncConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
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


def _as_bool(value: Any, default: bool) -> bool:
    # Env substitution leaves "true"/"false" strings behind
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "PROGRAMS_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug"), settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "database" in raw:
            db = raw["database"] or {}
            settings.database = DatabaseConfig(
                url=db.get("url") or settings.database.url,
                store_backend=db.get("store_backend", settings.database.store_backend),
            )

        if "notifications" in raw:
            nt = raw["notifications"] or {}
            settings.notifications = NotificationConfig(
                base_url=nt.get("base_url") or "",
                timeout_seconds=float(nt.get("timeout_seconds", 10.0)),
                connect_retries=int(nt.get("connect_retries", 3)),
            )

        if "scheduler" in raw:
            sc = raw["scheduler"] or {}
            defaults = SchedulerConfig()
            settings.scheduler = SchedulerConfig(
                enabled=_as_bool(sc.get("enabled"), defaults.enabled),
                interval_ms=int(sc.get("interval_ms", defaults.interval_ms)),
                crm_batch_size=int(sc.get("crm_batch_size", defaults.crm_batch_size)),
                application_reminder_age_minutes=int(sc.get(
                    "application_reminder_age_minutes", defaults.application_reminder_age_minutes)),
                application_reminder_limit=int(sc.get(
                    "application_reminder_limit", defaults.application_reminder_limit)),
                session_reminder_horizon_minutes=int(sc.get(
                    "session_reminder_horizon_minutes", defaults.session_reminder_horizon_minutes)),
                session_reminder_lookback_minutes=int(sc.get(
                    "session_reminder_lookback_minutes", defaults.session_reminder_lookback_minutes)),
                session_reminder_limit=int(sc.get(
                    "session_reminder_limit", defaults.session_reminder_limit)),
            )

        if "crm" in raw:
            crm = raw["crm"] or {}
            settings.crm = CrmSyncConfig(
                default_max_attempts=int(crm.get("default_max_attempts", 5)),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
