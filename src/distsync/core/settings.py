"""Runtime settings loader."""

from __future__ import annotations

import datetime as dt
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from distsync.utils.env import get_env, get_float_env


class RedisSettings(BaseModel):
    url: str = "redis://localhost:6379/0"
    event_stream: str = "distsync.events"


class SqliteSettings(BaseModel):
    path: Path = Field(default=Path("distsync.sqlite3"))
    table_prefix: str = "distsync"
    busy_timeout_seconds: float = 5.0


class ProviderDefaults(BaseModel):
    """Defaults every provider built by the runtime starts from. ``ttl_seconds: null`` never expires."""

    ttl_seconds: Optional[float] = 300.0
    blocking_time_seconds: float = 60.0
    blocking_interval_seconds: float = 1.0
    refresh_ttl_seconds: float = 300.0

    @field_validator("blocking_interval_seconds", "refresh_ttl_seconds")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    def provider_kwargs(self) -> Dict[str, Any]:
        return {
            "default_ttl": None if self.ttl_seconds is None else dt.timedelta(seconds=self.ttl_seconds),
            "default_blocking_time": dt.timedelta(seconds=self.blocking_time_seconds),
            "default_blocking_interval": dt.timedelta(seconds=self.blocking_interval_seconds),
            "default_refresh_ttl": dt.timedelta(seconds=self.refresh_ttl_seconds),
        }


class CoordinationSettings(BaseModel):
    backend: Literal["memory", "redis", "sqlite"] = "memory"
    bus: Literal["none", "memory", "redis"] = "memory"
    redis: RedisSettings = Field(default_factory=RedisSettings)
    sqlite: SqliteSettings = Field(default_factory=SqliteSettings)
    defaults: ProviderDefaults = Field(default_factory=ProviderDefaults)
    sweep_interval_seconds: Optional[float] = None
    audit_log_path: Optional[Path] = None
    serde_tag_prefix: Optional[str] = None

    @property
    def sweep_interval(self) -> Optional[dt.timedelta]:
        if self.sweep_interval_seconds is None:
            return None
        return dt.timedelta(seconds=self.sweep_interval_seconds)

    @classmethod
    def from_file(cls, path: Path) -> "CoordinationSettings":
        data = yaml.safe_load(path.read_text()) or {}
        settings = cls._validate(_apply_env(data))
        if not settings.sqlite.path.is_absolute():
            settings.sqlite.path = (path.parent / settings.sqlite.path).resolve()
        if settings.audit_log_path and not settings.audit_log_path.is_absolute():
            settings.audit_log_path = (path.parent / settings.audit_log_path).resolve()
        return settings

    @classmethod
    def from_env(cls) -> "CoordinationSettings":
        return cls._validate(_apply_env({}))

    @classmethod
    def _validate(cls, data: Dict[str, Any]) -> "CoordinationSettings":
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Invalid coordination settings: {exc}") from exc


def _apply_env(data: Dict[str, Any]) -> Dict[str, Any]:
    """Environment variables win over the file."""
    merged = dict(data)
    backend = get_env("DISTSYNC_BACKEND")
    if backend:
        merged["backend"] = backend.lower()
    bus = get_env("DISTSYNC_BUS")
    if bus:
        merged["bus"] = bus.lower()
    redis_url = get_env("REDIS_URL")
    if redis_url:
        merged["redis"] = {**(merged.get("redis") or {}), "url": redis_url}
    sqlite_path = get_env("DISTSYNC_SQLITE_PATH")
    if sqlite_path:
        merged["sqlite"] = {**(merged.get("sqlite") or {}), "path": sqlite_path}
    audit_log = get_env("DISTSYNC_AUDIT_LOG")
    if audit_log:
        merged["audit_log_path"] = audit_log
    sweep = get_float_env("DISTSYNC_SWEEP_INTERVAL")
    if sweep is not None:
        merged["sweep_interval_seconds"] = sweep
    return merged
