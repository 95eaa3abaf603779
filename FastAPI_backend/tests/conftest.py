import os
import sys
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.settings import AlertSettings
from models.domain_models import (
    Caregiver, DeviceConnectivityState, EmergencyEvent, EventStatus, NotificationMethod, Owner
)
from services.errors import DeliveryFailure


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeDirectory:
    """Owner and caregiver lookups backed by dicts."""

    def __init__(self):
        self.owners = {}
        self.caregivers = {}
        self.links = {}

    def add_owner(self, name="Alice"):
        owner = Owner(id=str(uuid.uuid4()), name=name, email=f"{name.lower()}@example.com")
        self.owners[owner.id] = owner
        self.links[owner.id] = []
        return owner

    def add_caregiver(self, owner_id, name, push_enabled=False):
        caregiver = Caregiver(
            id=str(uuid.uuid4()), name=name, email=f"{name.lower()}@example.com",
            push_enabled=push_enabled
        )
        self.caregivers[caregiver.id] = caregiver
        self.links[owner_id].append(caregiver)
        return caregiver

    def get_owner(self, owner_id):
        return self.owners.get(owner_id)

    def get_linked_caregivers(self, owner_id):
        return list(self.links.get(owner_id, []))


class FakeDeviceRepository:
    def __init__(self):
        self.devices = {}
        self.connectivity = {}

    def register_device(self, device_id, owner_id):
        self.devices[device_id] = {'id': str(uuid.uuid4()), 'device_id': device_id, 'owner_id': owner_id}
        return self.devices[device_id]

    def get_device_by_id(self, device_id):
        return self.devices.get(device_id)

    def record_heartbeat(self, owner_id, timestamp, firmware_version=None):
        current = self.connectivity.get(owner_id)
        if current is None:
            state = DeviceConnectivityState(
                owner_id=owner_id, last_heartbeat=timestamp, firmware_version=firmware_version
            )
        else:
            state = DeviceConnectivityState(
                owner_id=owner_id,
                last_heartbeat=max(current.last_heartbeat, timestamp),
                firmware_version=firmware_version or current.firmware_version
            )
        self.connectivity[owner_id] = state
        return state

    def get_connectivity(self, owner_id):
        return self.connectivity.get(owner_id)


class FakeTelemetryRepository:
    def __init__(self):
        self.rows = []

    def save_reading(self, reading):
        stored = reading.model_copy(update={'id': str(uuid.uuid4())})
        self.rows.append(stored)
        return stored

    def get_readings(self, owner_id, limit):
        owned = [r for r in self.rows if r.owner_id == owner_id]
        owned.sort(key=lambda r: r.timestamp, reverse=True)
        return owned[:limit]


class FakeEmergencyRepository:
    """Mirrors the conditional updates the SQL repository relies on."""

    def __init__(self):
        self.events = {}
        self.lock = threading.Lock()
        self.status_history = {}

    def create_event(self, owner_id, location, source, created_at):
        event = EmergencyEvent(
            id=str(uuid.uuid4()), owner_id=owner_id, location=location,
            source=source, created_at=created_at
        )
        with self.lock:
            self.events[event.id] = event
            self.status_history[event.id] = [EventStatus.PENDING]
        return event.model_copy(deep=True)

    def get_event(self, event_id):
        with self.lock:
            event = self.events.get(event_id)
            return event.model_copy(deep=True) if event else None

    def get_events_for_owner(self, owner_id, active_only=False):
        with self.lock:
            events = [e for e in self.events.values() if e.owner_id == owner_id]
        if active_only:
            events = [e for e in events if e.status != EventStatus.RESOLVED]
        events.sort(key=lambda e: e.created_at, reverse=True)
        return [e.model_copy(deep=True) for e in events]

    def add_notification(self, event_id, record):
        with self.lock:
            event = self.events[event_id]
            if record.caregiver_id in event.notified_caregiver_ids:
                return False
            event.notifications.append(record)
            return True

    def mark_notified(self, event_id):
        with self.lock:
            event = self.events[event_id]
            if event.status != EventStatus.PENDING:
                return False
            event.status = EventStatus.NOTIFIED
            self.status_history[event_id].append(EventStatus.NOTIFIED)
            return True

    def resolve_event(self, event_id, actor_id, actor_role, resolved_at):
        with self.lock:
            event = self.events[event_id]
            if event.status == EventStatus.RESOLVED:
                return None
            event.status = EventStatus.RESOLVED
            event.resolved_at = resolved_at
            event.resolved_by = actor_id
            event.resolved_by_role = actor_role
            self.status_history[event_id].append(EventStatus.RESOLVED)
            return event.model_copy(deep=True)


class FakeChannel:
    def __init__(self, method=NotificationMethod.EMAIL, failing=(), slow=(), delay=0.0):
        self.method = method
        self.failing = set(failing)
        self.slow = set(slow)
        self.delay = delay
        self.sent = []
        self.lock = threading.Lock()

    def send(self, caregiver, message):
        if caregiver.id in self.slow:
            time.sleep(self.delay)
        if caregiver.id in self.failing:
            raise DeliveryFailure("smtp refused", caregiver.id, self.method.value)
        with self.lock:
            self.sent.append((caregiver.id, message))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return AlertSettings(
        proximity_warning_threshold=50,
        proximity_alert_threshold=30,
        low_battery_threshold=20,
        critical_battery_threshold=10,
        heartbeat_timeout_seconds=300,
        delivery_timeout_seconds=1.0,
        fanout_max_workers=4
    )


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def devices():
    return FakeDeviceRepository()


@pytest.fixture
def readings():
    return FakeTelemetryRepository()


@pytest.fixture
def events():
    return FakeEmergencyRepository()
