from datetime import datetime
from typing import Callable, List, Optional

from config.logging_config import get_logger
from config.settings import AlertSettings
from models.domain_models import (
    AlertLevel, Classification, IngestResult, Location, ReadingSource, TelemetryReading
)
from repositories.device_repository import DeviceRepository
from repositories.telemetry_repository import TelemetryRepository
from repositories.user_repository import UserRepository
from services.errors import InvalidInput, NotFound
from services.validation import (
    as_utc, require_battery_level, require_distance, require_location, utc_now
)

logger = get_logger(__name__)


def classify_level(value: float, critical_below: float, warning_below: float) -> AlertLevel:
    """Critical strictly below the critical threshold, warning strictly below the warning one."""
    if value < critical_below:
        return AlertLevel.CRITICAL
    if value < warning_below:
        return AlertLevel.WARNING
    return AlertLevel.NONE


class TelemetryService:
    def __init__(self, settings: AlertSettings, owners=UserRepository,
                 devices=DeviceRepository, readings=TelemetryRepository,
                 clock: Callable[[], datetime] = utc_now):
        self.settings = settings
        self.owners = owners
        self.devices = devices
        self.readings = readings
        self.clock = clock

    def classify_distance(self, distance: float) -> AlertLevel:
        return classify_level(
            distance,
            self.settings.proximity_alert_threshold,
            self.settings.proximity_warning_threshold
        )

    def classify_battery(self, battery_level: float) -> AlertLevel:
        return classify_level(
            battery_level,
            self.settings.critical_battery_threshold,
            self.settings.low_battery_threshold
        )

    def classify(self, reading: TelemetryReading) -> Classification:
        return Classification(
            distance_level=self.classify_distance(reading.distance),
            battery_level=self.classify_battery(reading.battery_level)
        )

    def ingest(self, owner_id: str, distance: float, battery_level: float,
               location: Optional[Location], source: ReadingSource = ReadingSource.APP,
               timestamp: Optional[datetime] = None, firmware_version: Optional[str] = None,
               device_id: Optional[str] = None) -> IngestResult:
        if not self.owners.get_owner(owner_id):
            raise NotFound(f"Owner {owner_id} not found")

        reading = TelemetryReading(
            owner_id=owner_id,
            device_id=device_id,
            distance=require_distance(distance),
            battery_level=require_battery_level(battery_level),
            location=require_location(location),
            source=source,
            timestamp=as_utc(timestamp, self.clock())
        )

        stored = self.readings.save_reading(reading)
        self.devices.record_heartbeat(owner_id, stored.timestamp, firmware_version)

        classification = self.classify(stored)
        self._log_classification(stored, classification)

        return IngestResult(reading=stored, classification=classification)

    def ingest_from_device(self, device_id: str, distance: float, battery_level: float,
                           location: Optional[Location], timestamp: Optional[datetime] = None,
                           firmware_version: Optional[str] = None) -> IngestResult:
        device = self.devices.get_device_by_id(device_id)
        if not device:
            raise NotFound(f"Device {device_id} is not registered")

        return self.ingest(
            device['owner_id'], distance, battery_level, location,
            source=ReadingSource.DEVICE,
            timestamp=timestamp,
            firmware_version=firmware_version,
            device_id=device_id
        )

    def readings_for_owner(self, owner_id: str, limit: Optional[int] = None) -> List[TelemetryReading]:
        if limit is None:
            limit = self.settings.default_readings_limit
        if limit < 1 or limit > self.settings.max_readings_limit:
            raise InvalidInput(f"limit must be between 1 and {self.settings.max_readings_limit}")
        if not self.owners.get_owner(owner_id):
            raise NotFound(f"Owner {owner_id} not found")

        return self.readings.get_readings(owner_id, limit)

    def latest_reading(self, owner_id: str) -> Optional[TelemetryReading]:
        readings = self.readings_for_owner(owner_id, limit=1)
        return readings[0] if readings else None

    def _log_classification(self, reading: TelemetryReading, classification: Classification) -> None:
        if classification.distance_level == AlertLevel.CRITICAL:
            logger.warning(f"CRITICAL: obstacle at {reading.distance}cm for owner {reading.owner_id}")
        elif classification.distance_level == AlertLevel.WARNING:
            logger.warning(f"WARNING: obstacle at {reading.distance}cm for owner {reading.owner_id}")

        if classification.battery_level == AlertLevel.CRITICAL:
            logger.warning(f"CRITICAL: battery at {reading.battery_level}% for owner {reading.owner_id}")
        elif classification.battery_level == AlertLevel.WARNING:
            logger.warning(f"WARNING: battery low at {reading.battery_level}% for owner {reading.owner_id}")

        logger.info(
            f"Stored reading {reading.id} for owner {reading.owner_id} "
            f"(source={reading.source.value}, distance={classification.distance_level.value}, "
            f"battery={classification.battery_level.value})"
        )
