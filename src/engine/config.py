"""Runtime configuration for the geofence engine.

Values come from defaults, then an optional JSON config file, and
environment variables prefixed GEOFENCE_ override both, e.g.
GEOFENCE_COOLDOWN_WINDOW_MINUTES=10 or
GEOFENCE_ENDPOINTS__ALERTS_URL=http://backend/api/alerts.
"""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EndpointConfig(BaseModel):
    """Fleet backend endpoints."""
    vehicles_url: str = "http://localhost:8055/api/vehicles"
    geofences_url: str = "http://localhost:8055/api/geofence"
    positions_url: str | None = None   # raw GPS data points keyed by gps_id
    alerts_url: str = "http://localhost:8055/api/alerts"
    notify_url: str | None = None      # live notification webhook
    events_url: str | None = None      # geofence event log, every crossing
    auth_token: str | None = None
    request_timeout_seconds: float = Field(10.0, gt=0)


class EngineConfig(BaseSettings):
    """Top-level configuration."""
    model_config = SettingsConfigDict(
        env_prefix="GEOFENCE_",
        env_nested_delimiter="__",
    )

    evaluation_interval_seconds: float = Field(15.0, gt=0)
    online_freshness_minutes: float = Field(15.0, gt=0)
    cooldown_window_minutes: float = Field(5.0, ge=0)
    sink_timeout_seconds: float = Field(5.0, gt=0)
    prune_every_ticks: int = Field(60, ge=0)      # 0 disables housekeeping
    health_log_every_ticks: int = Field(20, ge=0)
    log_level: str = "INFO"

    endpoints: EndpointConfig = EndpointConfig()

    # Alert CSV log
    alert_log_dir: Path | None = None   # set to enable CSV alert logging

    @property
    def freshness(self) -> timedelta:
        return timedelta(minutes=self.online_freshness_minutes)

    @property
    def cooldown_window(self) -> timedelta:
        return timedelta(minutes=self.cooldown_window_minutes)


def _merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Path | None = None) -> EngineConfig:
    """Defaults + optional JSON file, with environment overrides on top."""
    if path is None or not path.exists():
        return EngineConfig()
    # init kwargs outrank env in pydantic-settings, so re-apply env on top
    file_values = json.loads(path.read_text())
    env_values = EngineConfig().model_dump(exclude_unset=True)
    return EngineConfig(**_merge(file_values, env_values))
