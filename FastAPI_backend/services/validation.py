import math
from datetime import datetime, timezone
from typing import Optional, Union, Mapping

from models.domain_models import Location
from services.errors import InvalidInput


def _finite(value, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"{name} must be a number")
    if not math.isfinite(number):
        raise InvalidInput(f"{name} must be a finite number")
    return number


def require_location(location: Union[Location, Mapping, None]) -> Location:
    if location is None:
        raise InvalidInput("location is required")
    if isinstance(location, Location):
        raw = location.model_dump()
    elif hasattr(location, "model_dump"):
        raw = location.model_dump()
    else:
        raw = dict(location)

    if raw.get("latitude") is None or raw.get("longitude") is None:
        raise InvalidInput("location requires latitude and longitude")

    latitude = _finite(raw["latitude"], "latitude")
    longitude = _finite(raw["longitude"], "longitude")
    accuracy = raw.get("accuracy")
    accuracy = 10.0 if accuracy is None else _finite(accuracy, "accuracy")

    if not -90.0 <= latitude <= 90.0:
        raise InvalidInput(f"latitude {latitude} outside [-90, 90]")
    if not -180.0 <= longitude <= 180.0:
        raise InvalidInput(f"longitude {longitude} outside [-180, 180]")
    if accuracy < 0:
        raise InvalidInput("accuracy must not be negative")

    return Location(latitude=latitude, longitude=longitude, accuracy=accuracy)


def require_distance(distance) -> float:
    if distance is None:
        raise InvalidInput("distance is required")
    value = _finite(distance, "distance")
    if value < 0:
        raise InvalidInput(f"distance must be >= 0, got {value}")
    return value


def require_battery_level(battery_level) -> float:
    if battery_level is None:
        raise InvalidInput("batteryLevel is required")
    value = _finite(battery_level, "batteryLevel")
    if not 0.0 <= value <= 100.0:
        raise InvalidInput(f"batteryLevel must be within [0, 100], got {value}")
    return value


def as_utc(timestamp: Optional[datetime], default: datetime) -> datetime:
    if timestamp is None:
        return default
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
