from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from models.domain_models import EventSource, ReadingSource

class LocationIn(BaseModel):
    latitude: float
    longitude: float
    accuracy: Optional[float] = None

class TelemetryUpdate(BaseModel):
    distance: float
    batteryLevel: float
    # Optional here so a missing location is reported by the ingest validation
    location: Optional[LocationIn] = None
    firmwareVersion: Optional[str] = None
    timestamp: Optional[datetime] = None

class ReadingSubmission(TelemetryUpdate):
    source: ReadingSource = ReadingSource.APP

class DeviceRegistration(BaseModel):
    device_id: str = Field(min_length=1)
    owner_id: str

class DeviceEmergency(BaseModel):
    location: Optional[LocationIn] = None

class EmergencyTrigger(BaseModel):
    location: Optional[LocationIn] = None
    source: EventSource = EventSource.APP
