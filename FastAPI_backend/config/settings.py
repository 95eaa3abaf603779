"""
Alert engine settings.

Thresholds and timeouts are injected into the services at construction time;
nothing reads them from module globals afterwards.
"""

import os
from datetime import timedelta
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

from services.errors import InvalidInput

load_dotenv()


class AlertSettings(BaseModel):
    """Sensor thresholds, liveness and fan-out tuning."""

    # Distance thresholds in cm
    proximity_warning_threshold: float = Field(default=50.0, ge=0.0)
    proximity_alert_threshold: float = Field(default=30.0, ge=0.0)

    # Battery thresholds in percent
    low_battery_threshold: float = Field(default=20.0, ge=0.0, le=100.0)
    critical_battery_threshold: float = Field(default=10.0, ge=0.0, le=100.0)

    heartbeat_timeout_seconds: float = Field(default=300.0, gt=0.0)

    delivery_timeout_seconds: float = Field(default=5.0, gt=0.0)
    fanout_max_workers: int = Field(default=8, gt=0)

    follow_up_enabled: bool = True
    follow_up_interval_seconds: float = Field(default=900.0, gt=0.0)
    max_follow_ups: int = Field(default=3, ge=0)

    default_readings_limit: int = Field(default=100, gt=0, le=1000)
    max_readings_limit: int = Field(default=1000, gt=0)

    @model_validator(mode="after")
    def check_threshold_order(self):
        if self.proximity_alert_threshold > self.proximity_warning_threshold:
            raise ValueError("proximity_alert_threshold must not exceed proximity_warning_threshold")
        if self.critical_battery_threshold > self.low_battery_threshold:
            raise ValueError("critical_battery_threshold must not exceed low_battery_threshold")
        if self.default_readings_limit > self.max_readings_limit:
            raise ValueError("default_readings_limit must not exceed max_readings_limit")
        return self

    @property
    def heartbeat_timeout(self) -> timedelta:
        return timedelta(seconds=self.heartbeat_timeout_seconds)


_ENV_KEYS = {
    "proximity_warning_threshold": "PROXIMITY_WARNING_THRESHOLD",
    "proximity_alert_threshold": "PROXIMITY_ALERT_THRESHOLD",
    "low_battery_threshold": "LOW_BATTERY_THRESHOLD",
    "critical_battery_threshold": "CRITICAL_BATTERY_THRESHOLD",
    "heartbeat_timeout_seconds": "HEARTBEAT_TIMEOUT_SECONDS",
    "delivery_timeout_seconds": "DELIVERY_TIMEOUT_SECONDS",
    "fanout_max_workers": "FANOUT_MAX_WORKERS",
    "follow_up_enabled": "FOLLOW_UP_ENABLED",
    "follow_up_interval_seconds": "FOLLOW_UP_INTERVAL_SECONDS",
    "max_follow_ups": "MAX_FOLLOW_UPS",
    "default_readings_limit": "DEFAULT_READINGS_LIMIT",
}


def load_settings(environ: Optional[Mapping[str, str]] = None) -> AlertSettings:
    """Build settings from environment variables, falling back to defaults.

    Raises InvalidInput when a value is malformed or the thresholds are
    inconsistent with each other.
    """
    if environ is None:
        environ = os.environ

    values = {
        field: environ[key]
        for field, key in _ENV_KEYS.items()
        if environ.get(key) not in (None, "")
    }
    try:
        return AlertSettings(**values)
    except ValidationError as e:
        raise InvalidInput(f"Invalid alert settings: {e}") from e
