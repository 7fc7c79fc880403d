"""
Configuration loader for the field-service assistant.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


DEFAULT_HOLIDAYS = [
    "01-01", "04-21", "05-01", "09-07",
    "10-12", "11-02", "11-15", "12-25",
]


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./assistant.db"             # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class SessionConfig:
    max_idle_seconds: int = 7200                       # 2h of inactivity ends a conversation
    sweep_interval_seconds: int = 1800
    backend: str = "memory"                            # "memory" | "sql" (durable sessions)


@dataclass
class SchedulerConfig:
    max_attempts: int = 3               # 1 disables retries (single attempt, then "failed")
    retry_backoff_base: int = 60        # base seconds for exponential retry backoff
    retry_backoff_max: int = 3600
    overdue_policy: str = "fire"        # "fire" | "missed" for jobs already due at recovery
    concurrency: int = 5                # max concurrent dispatches
    reminder_prefix: str = "🔔 Lembrete: "
    dead_letter_alert: bool = True      # notify the admin number when a job is dead-lettered


@dataclass
class SchedulingConfig:
    max_per_slot: int = 3
    max_days_ahead: int = 30
    today_cutoff_hour: int = 17         # "hoje" at/after this hour rolls to the next business day
    holidays: list[str] = field(default_factory=lambda: list(DEFAULT_HOLIDAYS))


@dataclass
class BusinessConfig:
    company_name: str = "TechFix Assistência"
    phone: str = "(81) 99999-0000"
    email: str = "contato@techfix.com.br"
    address: str = "Rua Exemplo, 123 - Centro"
    admin_number: str = ""
    operator_number: str = ""
    emergency_phone: str = "(81) 99999-0911"
    team_numbers: dict[str, str] = field(default_factory=dict)
    open_hour: int = 8
    close_hour: int = 18
    work_days: list[int] = field(default_factory=lambda: [0, 1, 2, 3, 4])   # Monday=0


@dataclass
class MessagingConfig:
    backend: str = "console"            # "console" for dev, "gateway" for production
    gateway_url: str = ""
    token: str = ""
    rate_per_second: float = 20.0
    burst: int = 40


@dataclass
class RateLimitConfig:
    max_messages: int = 15
    window_seconds: int = 60


@dataclass
class Settings:
    app_name: str = "FieldServiceAssistant"
    debug: bool = False
    timezone: str = "America/Sao_Paulo"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    business: BusinessConfig = field(default_factory=BusinessConfig)
    messaging: MessagingConfig = field(default_factory=MessagingConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    faq_path: str = ""


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} and ${VAR_NAME:-default} patterns with environment values."""
    pattern = re.compile(r'\$\{(\w+)(?::-([^}]*))?\}')
    def replacer(match):
        var_name, default = match.group(1), match.group(2)
        if default is None:
            return os.environ.get(var_name, match.group(0))
        return os.environ.get(var_name, default)
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


def _section(cls, raw: dict[str, Any], default):
    """Build a config dataclass from a YAML mapping, keeping defaults for missing keys."""
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    values = {name: getattr(default, name) for name in cls.__dataclass_fields__}
    values.update(known)
    return cls(**values)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "ASSISTANT_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)
        settings.faq_path = raw.get("faq_path", settings.faq_path)

        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"], settings.database)

        if "session" in raw:
            settings.session = _section(SessionConfig, raw["session"], settings.session)

        if "scheduler" in raw:
            settings.scheduler = _section(SchedulerConfig, raw["scheduler"], settings.scheduler)

        if "scheduling" in raw:
            settings.scheduling = _section(SchedulingConfig, raw["scheduling"], settings.scheduling)

        if "business" in raw:
            settings.business = _section(BusinessConfig, raw["business"], settings.business)

        if "messaging" in raw:
            settings.messaging = _section(MessagingConfig, raw["messaging"], settings.messaging)

        if "rate_limit" in raw:
            settings.rate_limit = _section(RateLimitConfig, raw["rate_limit"], settings.rate_limit)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
