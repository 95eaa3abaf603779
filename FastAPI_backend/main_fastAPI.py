import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from auth import get_actor
from config.logging_config import get_logger, setup_logging
from config.settings import load_settings
from models.domain_models import NotificationMethod
from models.request_models import *
from models.response_models import *
from repositories.device_repository import DeviceRepository
from repositories.user_repository import UserRepository
from services.channels import EmailChannel, PushChannel
from services.connectivity_service import ConnectivityService
from services.emergency_service import EmergencyService
from services.errors import AlertError, NotFound
from services.followup_publisher import FollowUpPublisher
from services.notification_service import NotificationService
from services.telemetry_service import TelemetryService

setup_logging()
logger = get_logger(__name__)

settings = load_settings()

notification_service = NotificationService(
    settings,
    channels={NotificationMethod.EMAIL: EmailChannel.from_env(settings.delivery_timeout_seconds)}
)
telemetry_service = TelemetryService(settings)
connectivity_service = ConnectivityService(settings)
emergency_service = EmergencyService(
    settings,
    notification_service,
    follow_ups=FollowUpPublisher(settings.follow_up_interval_seconds)
)


def on_startup():
    if os.getenv("INIT_SCHEMA", "0") == "1":
        from config.database import init_schema
        init_schema()

    if os.getenv("PUSH_NOTIFICATIONS_ENABLED", "0") == "1":
        try:
            notification_service.channels[NotificationMethod.PUSH] = PushChannel.from_env(
                settings.delivery_timeout_seconds
            )
            logger.info("Push notification channel connected")
        except OSError as e:
            logger.error(f"Push channel unavailable, falling back to email only: {e}")

    logger.info(
        f"Thresholds: proximity warning<{settings.proximity_warning_threshold}cm "
        f"alert<{settings.proximity_alert_threshold}cm, battery low<{settings.low_battery_threshold}% "
        f"critical<{settings.critical_battery_threshold}%, heartbeat timeout {settings.heartbeat_timeout_seconds:.0f}s"
    )


def on_shutdown():
    push = notification_service.channels.pop(NotificationMethod.PUSH, None)
    if push is not None:
        push.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    on_startup()
    try:
        yield
    finally:
        on_shutdown()


app = FastAPI(
    title="CareLink Alerts Backend",
    description="Telemetry thresholds, device liveness and emergency fan-out for wearable owners",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(AlertError)
def alert_error_handler(request: Request, exc: AlertError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def _location(location):
    return location.model_dump() if location is not None else None


# Device-originated calls: trusted through the physical device registration

@app.post("/devices", response_model=DeviceResponse)
def register_device(request: DeviceRegistration):
    if not UserRepository.get_owner(request.owner_id):
        raise NotFound(f"Owner {request.owner_id} not found")
    device = DeviceRepository.register_device(request.device_id, request.owner_id)
    logger.info(f"Device {request.device_id} bound to owner {request.owner_id}")
    return device


@app.post("/devices/{device_id}/telemetry", response_model=ReadingResponse)
def device_telemetry(device_id: str, update: TelemetryUpdate):
    result = telemetry_service.ingest_from_device(
        device_id,
        update.distance,
        update.batteryLevel,
        _location(update.location),
        timestamp=update.timestamp,
        firmware_version=update.firmwareVersion
    )
    return ReadingResponse(data=result.reading, classification=result.classification)


@app.post("/devices/{device_id}/emergency", response_model=EmergencyResponse)
def device_emergency(device_id: str, request: DeviceEmergency):
    event = emergency_service.trigger_from_device(device_id, _location(request.location))
    return EmergencyResponse.from_event(event)


# Owner-scoped calls

@app.post("/users/{owner_id}/readings", response_model=ReadingResponse, status_code=201)
def submit_reading(owner_id: str, submission: ReadingSubmission):
    result = telemetry_service.ingest(
        owner_id,
        submission.distance,
        submission.batteryLevel,
        _location(submission.location),
        source=submission.source,
        timestamp=submission.timestamp,
        firmware_version=submission.firmwareVersion
    )
    return ReadingResponse(data=result.reading, classification=result.classification)


@app.get("/users/{owner_id}/readings", response_model=ReadingListResponse)
def get_readings(owner_id: str, limit: Optional[int] = Query(default=None)):
    readings = telemetry_service.readings_for_owner(owner_id, limit)
    return ReadingListResponse(count=len(readings), data=readings)


@app.get("/users/{owner_id}/device-status")
def get_device_status(owner_id: str):
    return connectivity_service.device_status(owner_id)


@app.post("/users/{owner_id}/emergencies", response_model=EmergencyResponse)
def trigger_emergency(owner_id: str, request: EmergencyTrigger):
    event = emergency_service.trigger(owner_id, _location(request.location), request.source)
    return EmergencyResponse.from_event(event)


@app.get("/users/{owner_id}/emergencies", response_model=EmergencyListResponse)
def get_emergencies(owner_id: str, active_only: bool = False):
    if active_only:
        events = emergency_service.active_events_for_owner(owner_id)
    else:
        events = emergency_service.events_for_owner(owner_id)
    return EmergencyListResponse(
        count=len(events),
        data=[EmergencyResponse.from_event(e) for e in events]
    )


# Event-scoped calls

@app.get("/emergencies/{event_id}", response_model=EmergencyResponse)
def get_emergency(event_id: str):
    return EmergencyResponse.from_event(emergency_service.get_event(event_id))


@app.put("/emergencies/{event_id}/resolve", response_model=EmergencyResponse)
def resolve_emergency(event_id: str, actor=Depends(get_actor)):
    event = emergency_service.resolve(event_id, actor)
    return EmergencyResponse.from_event(event)


@app.post("/emergencies/{event_id}/follow-up", response_model=EmergencyResponse)
def follow_up_emergency(event_id: str):
    """Re-notify linked caregivers who have not received this alert yet"""
    event = emergency_service.resume_fanout(event_id)
    return EmergencyResponse.from_event(event)


@app.get("/health")
def health_check():
    """Health check endpoint"""
    from config.database import test_connection

    db_healthy = test_connection()

    return {
        "status": "healthy" if db_healthy else "unhealthy",
        "database": "connected" if db_healthy else "disconnected",
        "version": "1.0.0",
        "channels": sorted(m.value for m in notification_service.channels)
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
