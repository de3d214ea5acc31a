"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (LINKAUDIT__SCHEDULER__MAX_CONCURRENT_AUDITS=2)
  2. linkaudit.yaml         (searched in cwd, then platform config dir)
  3. Hardcoded defaults

The config file is optional. Every field has a default. Durations accept
seconds or ISO 8601 strings (``PT6H``).
"""

from __future__ import annotations

import re
from datetime import timedelta
from pathlib import Path
from typing import Annotated, Any, Literal

import platformdirs
from pydantic import AfterValidator, BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("linkaudit")
_DEFAULT_DB_PATH = str(Path(_DEFAULT_DATA_DIR) / "linkaudit.db")

_CLOCK_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def _find_config_file() -> str | None:
    """Return the path of the first linkaudit.yaml found, or None."""
    candidates = [
        Path("linkaudit.yaml"),
        Path(platformdirs.user_config_dir("linkaudit")) / "linkaudit.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


def _positive(value: timedelta) -> timedelta:
    if value <= timedelta(0):
        raise ValueError("duration must be positive")
    return value


def _non_negative(value: timedelta) -> timedelta:
    if value < timedelta(0):
        raise ValueError("duration must not be negative")
    return value


PositiveDuration = Annotated[timedelta, AfterValidator(_positive)]
NonNegativeDuration = Annotated[timedelta, AfterValidator(_non_negative)]


class CacheSettings(BaseModel):
    link_results_ttl: PositiveDuration = timedelta(hours=6)
    sitemap_data_ttl: PositiveDuration = timedelta(hours=24)
    report_data_ttl: PositiveDuration = timedelta(days=7)
    max_memory_mb: float = Field(default=100.0, gt=0)
    cleanup_interval: PositiveDuration = timedelta(minutes=30)
    db_path: str = _DEFAULT_DB_PATH


class ValidationSettings(BaseModel):
    retry_attempts: int = Field(default=3, ge=1)
    timeout: PositiveDuration = timedelta(seconds=10)
    batch_size: int = Field(default=5, ge=1)
    rate_limit_delay: NonNegativeDuration = timedelta(seconds=1)
    local_batch_size: int = Field(default=20, ge=1)
    user_agent: str = "linkaudit/1.0 (+link health audit)"
    follow_redirects: bool = True


class SchedulerSettings(BaseModel):
    enabled: bool = True
    max_concurrent_audits: int = Field(default=1, ge=1)
    audit_timeout: PositiveDuration = timedelta(minutes=30)
    max_pending_age: PositiveDuration = timedelta(hours=24)
    daily_audit_time: str = "02:00"
    weekly_report_day: int = Field(default=1, ge=0, le=6)  # 0 = Sunday
    weekly_report_time: str = "09:00"
    alert_check_interval: PositiveDuration = timedelta(hours=6)
    pump_interval: PositiveDuration = timedelta(seconds=30)

    @field_validator("daily_audit_time", "weekly_report_time")
    @classmethod
    def validate_clock_time(cls, v: str) -> str:
        if not _CLOCK_TIME_RE.match(v):
            raise ValueError(f"Expected HH:MM (24h clock), got {v!r}")
        return v


class SiteSettings(BaseModel):
    base_url: str = "http://localhost:3000"
    public_dir: str = "public"
    routes: list[str] = ["/"]
    sitemap_urls: list[str] = []
    alert_health_threshold: float = Field(default=90.0, ge=0, le=100)


class ServerSettings(BaseModel):
    transport: Literal["stdio", "http"] = "stdio"
    host: str = "127.0.0.1"
    port: int = 8080
    auth_enabled: bool = False
    auth_key: str = ""


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: LINKAUDIT__SERVER__PORT=9090
        env_prefix="LINKAUDIT__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    cache: CacheSettings = CacheSettings()
    validation: ValidationSettings = ValidationSettings()
    scheduler: SchedulerSettings = SchedulerSettings()
    site: SiteSettings = SiteSettings()
    server: ServerSettings = ServerSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            YamlConfigSettingsSource(settings_cls),
            # dotenv and file secrets intentionally excluded
        )
