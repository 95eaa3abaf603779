"""
Emergency event lifecycle.

An event starts pending, becomes notified once at least one caregiver has
actually received the alert, and ends resolved. Status only ever moves
forward; the repository applies each transition as a conditional update so
concurrent callers cannot regress it or resolve it twice.
"""

from datetime import datetime
from typing import Callable, List, Optional

from config.logging_config import get_logger
from config.settings import AlertSettings
from models.domain_models import (
    Actor, CaregiverActor, EmergencyEvent, EventSource, EventStatus, Location, UserActor
)
from repositories.device_repository import DeviceRepository
from repositories.emergency_repository import EmergencyRepository
from repositories.user_repository import UserRepository
from services.errors import NotFound, Unauthorized
from services.notification_service import (
    SEVERITY_EMERGENCY, SEVERITY_FOLLOW_UP, NotificationService
)
from services.validation import require_location, utc_now

logger = get_logger(__name__)

ALLOWED_TRANSITIONS = {
    EventStatus.PENDING: {EventStatus.NOTIFIED, EventStatus.RESOLVED},
    EventStatus.NOTIFIED: {EventStatus.RESOLVED},
    EventStatus.RESOLVED: set(),
}


def can_transition(current: EventStatus, target: EventStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def can_resolve(actor: Actor, event: EmergencyEvent) -> bool:
    """Owners resolve their own events; caregivers only events they were notified of."""
    if isinstance(actor, UserActor):
        return actor.id == event.owner_id
    if isinstance(actor, CaregiverActor):
        return actor.id in event.notified_caregiver_ids
    return False


class EmergencyService:
    def __init__(self, settings: AlertSettings, fanout: NotificationService,
                 owners=UserRepository, caregivers=UserRepository,
                 events=EmergencyRepository, devices=DeviceRepository,
                 follow_ups=None, clock: Callable[[], datetime] = utc_now):
        self.settings = settings
        self.fanout = fanout
        self.owners = owners
        self.caregivers = caregivers
        self.events = events
        self.devices = devices
        self.follow_ups = follow_ups
        self.clock = clock

    def trigger(self, owner_id: str, location: Optional[Location],
                source: EventSource = EventSource.APP) -> EmergencyEvent:
        owner = self.owners.get_owner(owner_id)
        if not owner:
            raise NotFound(f"Owner {owner_id} not found")

        location = require_location(location)

        # Every trigger is its own incident, even when the owner already has an open one
        event = self.events.create_event(owner_id, location, source, self.clock())
        logger.info(f"Emergency {event.id} created for owner {owner_id} (source={source.value})")

        recipients = self.caregivers.get_linked_caregivers(owner_id)
        if not recipients:
            logger.warning(f"Owner {owner_id} has no linked caregivers; event {event.id} stays pending")
            return event

        outcomes = self.fanout.dispatch(event, recipients, owner, SEVERITY_EMERGENCY)
        if any(o.delivered for o in outcomes):
            self._advance(event, EventStatus.NOTIFIED)

        self._schedule_follow_up(event)
        return event

    def trigger_from_device(self, device_id: str, location: Optional[Location]) -> EmergencyEvent:
        device = self.devices.get_device_by_id(device_id)
        if not device:
            raise NotFound(f"Device {device_id} is not registered")
        return self.trigger(device['owner_id'], location, EventSource.DEVICE)

    def resolve(self, event_id: str, actor: Actor) -> EmergencyEvent:
        event = self.get_event(event_id)

        if not can_resolve(actor, event):
            raise Unauthorized(f"{actor.role} {actor.id} is not allowed to resolve emergency {event_id}")

        if event.is_resolved:
            logger.info(f"Emergency {event_id} already resolved by {event.resolved_by}; returning as-is")
            return event

        resolved = self.events.resolve_event(event.id, actor.id, actor.role, self.clock())
        if resolved is None:
            # Lost the race to a concurrent resolver; theirs stands
            logger.info(f"Emergency {event_id} was resolved concurrently; returning stored event")
            return self.get_event(event_id)

        logger.info(f"Emergency {event_id} resolved by {actor.role} {actor.id}")
        return resolved

    def resume_fanout(self, event_id: str) -> EmergencyEvent:
        """Retry delivery to linked caregivers that have no successful notification yet."""
        event = self.get_event(event_id)
        if event.is_resolved:
            return event

        owner = self.owners.get_owner(event.owner_id)
        if not owner:
            raise NotFound(f"Owner {event.owner_id} not found")

        already_notified = event.notified_caregiver_ids
        remaining = [
            c for c in self.caregivers.get_linked_caregivers(event.owner_id)
            if c.id not in already_notified
        ]
        if not remaining:
            logger.info(f"Emergency {event_id}: every linked caregiver already notified")
            return event

        outcomes = self.fanout.dispatch(event, remaining, owner, SEVERITY_FOLLOW_UP)
        if any(o.delivered for o in outcomes):
            self._advance(event, EventStatus.NOTIFIED)
        return event

    def get_event(self, event_id: str) -> EmergencyEvent:
        event = self.events.get_event(event_id)
        if not event:
            raise NotFound(f"Emergency event {event_id} not found")
        return event

    def events_for_owner(self, owner_id: str) -> List[EmergencyEvent]:
        if not self.owners.get_owner(owner_id):
            raise NotFound(f"Owner {owner_id} not found")
        return self.events.get_events_for_owner(owner_id)

    def active_events_for_owner(self, owner_id: str) -> List[EmergencyEvent]:
        if not self.owners.get_owner(owner_id):
            raise NotFound(f"Owner {owner_id} not found")
        return self.events.get_events_for_owner(owner_id, active_only=True)

    def _advance(self, event: EmergencyEvent, target: EventStatus) -> None:
        if not can_transition(event.status, target):
            return
        if target == EventStatus.NOTIFIED and self.events.mark_notified(event.id):
            logger.info(f"Emergency {event.id}: {event.status.value} -> {target.value}")
            event.status = target
            return
        # Someone else moved it first; adopt the stored lifecycle fields as a unit
        stored = self.events.get_event(event.id)
        if stored and can_transition(event.status, stored.status):
            event.status = stored.status
            event.resolved_at = stored.resolved_at
            event.resolved_by = stored.resolved_by
            event.resolved_by_role = stored.resolved_by_role

    def _schedule_follow_up(self, event: EmergencyEvent) -> None:
        if self.follow_ups is None or not self.settings.follow_up_enabled:
            return
        if self.settings.max_follow_ups == 0:
            return
        self.follow_ups.schedule(event.id)
