from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime

from models.domain_models import (
    Classification, EmergencyEvent, Location, NotificationRecord, TelemetryReading
)

class ReadingResponse(BaseModel):
    success: bool = True
    data: TelemetryReading
    classification: Classification

class ReadingListResponse(BaseModel):
    success: bool = True
    count: int
    data: List[TelemetryReading]

class DeviceResponse(BaseModel):
    id: str
    device_id: str
    owner_id: str

class EmergencyResponse(BaseModel):
    id: str
    owner_id: str
    status: str
    source: str
    location: Location
    created_at: datetime
    resolved_at: Optional[datetime]
    resolved_by: Optional[str]
    resolved_by_role: Optional[str]
    notified_count: int
    notifications: List[NotificationRecord]

    @classmethod
    def from_event(cls, event: EmergencyEvent) -> "EmergencyResponse":
        return cls(
            id=event.id,
            owner_id=event.owner_id,
            status=event.status.value,
            source=event.source.value,
            location=event.location,
            created_at=event.created_at,
            resolved_at=event.resolved_at,
            resolved_by=event.resolved_by,
            resolved_by_role=event.resolved_by_role,
            notified_count=event.notified_count,
            notifications=event.notifications
        )

class EmergencyListResponse(BaseModel):
    success: bool = True
    count: int
    data: List[EmergencyResponse]
