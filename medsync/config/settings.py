"""
Typed engine settings
Built from the [engine], [analytics], [daily_reset] and [notifications] sections
"""

from typing import Optional

from pydantic import BaseModel, Field

from .loader import ConfigLoader


class EngineSettings(BaseModel):
    """Thresholds and windows used by the engine services"""

    on_time_threshold_minutes: int = Field(default=30, ge=0)
    very_late_threshold_minutes: int = Field(default=120, ge=0)
    undo_timeout_seconds: int = Field(default=30, ge=1)
    correction_window_hours: int = Field(default=24, ge=1)
    schedule_horizon_days: int = Field(default=30, ge=1)
    max_scheduled_events_per_run: int = Field(default=100, ge=1)
    missed_window_before_minutes: int = Field(default=60, ge=0)
    missed_window_after_minutes: int = Field(default=240, ge=0)
    missed_lookback_hours: int = Field(default=24, ge=1)

    low_risk_threshold: float = 90
    medium_risk_threshold: float = 70
    high_risk_threshold: float = 50

    archive_batch_size: int = Field(default=500, ge=1, le=500)
    default_timezone: str = "America/Chicago"

    @classmethod
    def from_config(cls, config: ConfigLoader) -> "EngineSettings":
        values = dict(config.get("engine", {}) or {})
        for key in ("low_risk_threshold", "medium_risk_threshold", "high_risk_threshold"):
            value = config.get(f"analytics.{key}")
            if value is not None:
                values[key] = value
        batch_size = config.get("daily_reset.batch_size")
        if batch_size is not None:
            values["archive_batch_size"] = batch_size
        default_tz = config.get("daily_reset.default_timezone")
        if default_tz:
            values["default_timezone"] = default_tz
        return cls(**values)


class NotificationSettings(BaseModel):
    """Webhook dispatcher settings"""

    webhook_url: Optional[str] = None
    timeout: float = 10.0
    max_retries: int = Field(default=3, ge=0)
    retry_backoff: float = Field(default=1.0, ge=0)

    @classmethod
    def from_config(cls, config: ConfigLoader) -> "NotificationSettings":
        values = dict(config.get("notifications", {}) or {})
        if not values.get("webhook_url"):
            values["webhook_url"] = None
        return cls(**values)
