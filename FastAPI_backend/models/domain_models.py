"""
Domain models for telemetry, device liveness and emergency events.

Readings and notification records are frozen once created. EmergencyEvent is
mutable only through the emergency service, which keeps its status moving
forward.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ReadingSource(str, Enum):
    APP = "app"
    DEVICE = "device"
    WEB = "web"


class EventSource(str, Enum):
    APP = "app"
    DEVICE = "device"
    WEB = "web"
    CAREGIVER = "caregiver"


class EventStatus(str, Enum):
    PENDING = "pending"
    NOTIFIED = "notified"
    RESOLVED = "resolved"


class AlertLevel(str, Enum):
    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"


class NotificationMethod(str, Enum):
    EMAIL = "email"
    PUSH = "push"
    SMS = "sms"


class Location(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float
    accuracy: float = 10.0

    @property
    def map_link(self) -> str:
        return f"https://www.google.com/maps/search/?api=1&query={self.latitude},{self.longitude}"


class TelemetryReading(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    owner_id: str
    distance: float
    battery_level: float
    location: Location
    source: ReadingSource = ReadingSource.APP
    timestamp: datetime
    device_id: Optional[str] = None


class Classification(BaseModel):
    model_config = ConfigDict(frozen=True)

    distance_level: AlertLevel
    battery_level: AlertLevel

    @property
    def needs_attention(self) -> bool:
        return AlertLevel.CRITICAL in (self.distance_level, self.battery_level)


class IngestResult(BaseModel):
    reading: TelemetryReading
    classification: Classification


class DeviceConnectivityState(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner_id: str
    last_heartbeat: datetime
    firmware_version: Optional[str] = None


class DeviceStatus(BaseModel):
    owner_id: str
    connected: bool
    last_heartbeat: Optional[datetime] = None
    firmware_version: Optional[str] = None
    seconds_since_heartbeat: Optional[float] = None


class Owner(BaseModel):
    id: str
    name: str
    email: Optional[str] = None


class Caregiver(BaseModel):
    id: str
    name: str
    email: str
    phone: Optional[str] = None
    push_enabled: bool = False


class NotificationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    caregiver_id: str
    notified_at: datetime
    method: NotificationMethod = NotificationMethod.EMAIL
    outcome: str = "delivered"


class DeliveryOutcome(BaseModel):
    """Result of one delivery attempt. Failed outcomes are logged, never stored on the event."""

    caregiver_id: str
    method: NotificationMethod
    delivered: bool
    attempted_at: datetime
    error: Optional[str] = None

    def to_record(self) -> NotificationRecord:
        return NotificationRecord(
            caregiver_id=self.caregiver_id,
            notified_at=self.attempted_at,
            method=self.method,
        )


class EmergencyEvent(BaseModel):
    id: str
    owner_id: str
    location: Location
    status: EventStatus = EventStatus.PENDING
    source: EventSource = EventSource.APP
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_by_role: Optional[str] = None
    notifications: List[NotificationRecord] = Field(default_factory=list)

    @property
    def notified_caregiver_ids(self) -> set:
        return {n.caregiver_id for n in self.notifications}

    @property
    def notified_count(self) -> int:
        return len(self.notifications)

    @property
    def is_resolved(self) -> bool:
        return self.status == EventStatus.RESOLVED


class UserActor(BaseModel):
    """The monitored owner acting on their own events."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user"] = "user"
    id: str


class CaregiverActor(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["caregiver"] = "caregiver"
    id: str


Actor = Annotated[Union[UserActor, CaregiverActor], Field(discriminator="role")]
