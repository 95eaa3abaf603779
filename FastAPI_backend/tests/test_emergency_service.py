import threading
from unittest.mock import MagicMock

import pytest

from models.domain_models import (
    CaregiverActor, EventSource, EventStatus, NotificationMethod, UserActor
)
from services.emergency_service import EmergencyService, can_resolve, can_transition
from services.errors import InvalidInput, NotFound, Unauthorized
from services.notification_service import NotificationService

from conftest import FakeChannel

LOCATION = {"latitude": 51.5074, "longitude": -0.1278}


@pytest.fixture
def email():
    return FakeChannel()


@pytest.fixture
def follow_ups():
    return MagicMock()


@pytest.fixture
def service(settings, directory, events, devices, email, follow_ups, clock):
    fanout = NotificationService(settings, {NotificationMethod.EMAIL: email}, events=events, clock=clock)
    return EmergencyService(
        settings, fanout,
        owners=directory, caregivers=directory, events=events, devices=devices,
        follow_ups=follow_ups, clock=clock
    )


@pytest.fixture
def owner(directory):
    return directory.add_owner("Alice")


class TestTrigger:

    def test_scenario_two_caregivers_notified(self, service, directory, owner, events):
        a = directory.add_caregiver(owner.id, "Bob")
        b = directory.add_caregiver(owner.id, "Carol")

        event = service.trigger(owner.id, LOCATION)

        assert event.status == EventStatus.NOTIFIED
        assert len(event.notifications) == 2
        assert event.notified_caregiver_ids == {a.id, b.id}
        assert events.get_event(event.id).status == EventStatus.NOTIFIED

    def test_scenario_no_caregivers_stays_pending(self, service, owner, follow_ups):
        event = service.trigger(owner.id, LOCATION)

        assert event.status == EventStatus.PENDING
        assert event.notifications == []
        follow_ups.schedule.assert_not_called()

    def test_all_deliveries_fail_still_returns_event(self, service, directory, owner, email):
        a = directory.add_caregiver(owner.id, "Bob")
        email.failing = {a.id}

        event = service.trigger(owner.id, LOCATION)

        assert event.status == EventStatus.PENDING
        assert event.notifications == []

    def test_partial_delivery_notifies(self, service, directory, owner, email):
        a = directory.add_caregiver(owner.id, "Bob")
        b = directory.add_caregiver(owner.id, "Carol")
        email.failing = {a.id}

        event = service.trigger(owner.id, LOCATION)

        assert event.status == EventStatus.NOTIFIED
        assert event.notified_caregiver_ids == {b.id}

    def test_each_trigger_is_new_incident(self, service, directory, owner):
        directory.add_caregiver(owner.id, "Bob")

        first = service.trigger(owner.id, LOCATION)
        second = service.trigger(owner.id, LOCATION)

        assert first.id != second.id
        assert len(service.active_events_for_owner(owner.id)) == 2

    def test_unknown_owner(self, service):
        with pytest.raises(NotFound):
            service.trigger("missing-owner", LOCATION)

    def test_missing_location(self, service, owner):
        with pytest.raises(InvalidInput):
            service.trigger(owner.id, None)

    def test_follow_up_scheduled(self, service, directory, owner, follow_ups):
        directory.add_caregiver(owner.id, "Bob")
        event = service.trigger(owner.id, LOCATION)
        follow_ups.schedule.assert_called_once_with(event.id)

    def test_follow_up_disabled(self, settings, service, directory, owner, follow_ups):
        directory.add_caregiver(owner.id, "Bob")
        service.settings = settings.model_copy(update={"follow_up_enabled": False})

        service.trigger(owner.id, LOCATION)

        follow_ups.schedule.assert_not_called()

    def test_device_trigger(self, service, directory, devices, owner):
        directory.add_caregiver(owner.id, "Bob")
        devices.register_device("GLASSES001", owner.id)

        event = service.trigger_from_device("GLASSES001", LOCATION)

        assert event.owner_id == owner.id
        assert event.source == EventSource.DEVICE

    def test_unregistered_device(self, service):
        with pytest.raises(NotFound):
            service.trigger_from_device("UNKNOWN", LOCATION)


class TestResolve:

    def test_scenario_first_caregiver_wins(self, service, directory, owner, clock):
        a = directory.add_caregiver(owner.id, "Bob")
        b = directory.add_caregiver(owner.id, "Carol")
        event = service.trigger(owner.id, LOCATION)

        resolved = service.resolve(event.id, CaregiverActor(id=a.id))
        assert resolved.status == EventStatus.RESOLVED
        assert resolved.resolved_by == a.id
        assert resolved.resolved_at == clock.now

        clock.advance(minutes=2)
        again = service.resolve(event.id, CaregiverActor(id=b.id))
        assert again.resolved_by == a.id
        assert again.resolved_at == resolved.resolved_at

    def test_resolve_twice_same_actor_is_idempotent(self, service, directory, owner, clock):
        a = directory.add_caregiver(owner.id, "Bob")
        event = service.trigger(owner.id, LOCATION)

        first = service.resolve(event.id, CaregiverActor(id=a.id))
        clock.advance(seconds=30)
        second = service.resolve(event.id, CaregiverActor(id=a.id))

        assert second.resolved_at == first.resolved_at
        assert second.resolved_by == first.resolved_by

    def test_linked_but_not_notified_caregiver_unauthorized(self, service, directory, owner, email):
        a = directory.add_caregiver(owner.id, "Bob")
        b = directory.add_caregiver(owner.id, "Carol")
        email.failing = {b.id}
        event = service.trigger(owner.id, LOCATION)

        with pytest.raises(Unauthorized):
            service.resolve(event.id, CaregiverActor(id=b.id))

    def test_unrelated_caregiver_unauthorized_even_when_resolved(self, service, directory, owner):
        directory.add_caregiver(owner.id, "Bob")
        event = service.trigger(owner.id, LOCATION)
        service.resolve(event.id, UserActor(id=owner.id))

        with pytest.raises(Unauthorized):
            service.resolve(event.id, CaregiverActor(id="stranger"))

    def test_owner_resolves_own_pending_event(self, service, owner):
        event = service.trigger(owner.id, LOCATION)

        resolved = service.resolve(event.id, UserActor(id=owner.id))

        assert resolved.status == EventStatus.RESOLVED
        assert resolved.resolved_by == owner.id
        assert resolved.resolved_by_role == "user"

    def test_other_user_unauthorized(self, service, directory, owner):
        other = directory.add_owner("Mallory")
        event = service.trigger(owner.id, LOCATION)

        with pytest.raises(Unauthorized):
            service.resolve(event.id, UserActor(id=other.id))

    def test_unknown_event(self, service, owner):
        with pytest.raises(NotFound):
            service.resolve("missing-event", UserActor(id=owner.id))

    def test_concurrent_resolves_single_winner(self, service, directory, owner, events):
        caregivers = [directory.add_caregiver(owner.id, f"Care{i}") for i in range(6)]
        event = service.trigger(owner.id, LOCATION)
        results = []
        barrier = threading.Barrier(len(caregivers))

        def resolve(caregiver):
            barrier.wait()
            results.append(service.resolve(event.id, CaregiverActor(id=caregiver.id)))

        threads = [threading.Thread(target=resolve, args=(c,)) for c in caregivers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = {r.resolved_by for r in results}
        assert len(winners) == 1
        assert winners == {events.get_event(event.id).resolved_by}
        assert events.status_history[event.id].count(EventStatus.RESOLVED) == 1


class TestResumeFanout:

    def test_only_unnotified_caregivers_retried(self, service, directory, owner, email):
        a = directory.add_caregiver(owner.id, "Bob")
        b = directory.add_caregiver(owner.id, "Carol")
        email.failing = {b.id}
        event = service.trigger(owner.id, LOCATION)
        email.failing = set()
        email.sent.clear()

        resumed = service.resume_fanout(event.id)

        assert [cid for cid, _ in email.sent] == [b.id]
        assert resumed.notified_caregiver_ids == {a.id, b.id}
        assert len(resumed.notifications) == 2

    def test_first_success_advances_pending(self, service, directory, owner, email, events):
        a = directory.add_caregiver(owner.id, "Bob")
        email.failing = {a.id}
        event = service.trigger(owner.id, LOCATION)
        assert event.status == EventStatus.PENDING
        email.failing = set()

        resumed = service.resume_fanout(event.id)

        assert resumed.status == EventStatus.NOTIFIED
        assert events.status_history[event.id] == [EventStatus.PENDING, EventStatus.NOTIFIED]

    def test_nothing_left_to_send(self, service, directory, owner, email):
        directory.add_caregiver(owner.id, "Bob")
        event = service.trigger(owner.id, LOCATION)
        email.sent.clear()

        service.resume_fanout(event.id)

        assert email.sent == []

    def test_newly_linked_caregiver_reached(self, service, directory, owner, email):
        directory.add_caregiver(owner.id, "Bob")
        event = service.trigger(owner.id, LOCATION)
        late = directory.add_caregiver(owner.id, "Dave")
        email.sent.clear()

        resumed = service.resume_fanout(event.id)

        assert [cid for cid, _ in email.sent] == [late.id]
        assert late.id in resumed.notified_caregiver_ids

    def test_resolved_event_untouched(self, service, directory, owner, email):
        a = directory.add_caregiver(owner.id, "Bob")
        b = directory.add_caregiver(owner.id, "Carol")
        email.failing = {b.id}
        event = service.trigger(owner.id, LOCATION)
        service.resolve(event.id, CaregiverActor(id=a.id))
        email.failing = set()
        email.sent.clear()

        resumed = service.resume_fanout(event.id)

        assert resumed.status == EventStatus.RESOLVED
        assert email.sent == []

    def test_unknown_event(self, service):
        with pytest.raises(NotFound):
            service.resume_fanout("missing-event")


class TestLifecycle:

    def test_status_history_is_forward_only(self, service, directory, owner, events):
        a = directory.add_caregiver(owner.id, "Bob")
        event = service.trigger(owner.id, LOCATION)
        service.resume_fanout(event.id)
        service.resolve(event.id, CaregiverActor(id=a.id))
        service.resolve(event.id, UserActor(id=owner.id))
        service.resume_fanout(event.id)

        assert events.status_history[event.id] == [
            EventStatus.PENDING, EventStatus.NOTIFIED, EventStatus.RESOLVED
        ]

    @pytest.mark.parametrize("current,target,allowed", [
        (EventStatus.PENDING, EventStatus.NOTIFIED, True),
        (EventStatus.PENDING, EventStatus.RESOLVED, True),
        (EventStatus.NOTIFIED, EventStatus.RESOLVED, True),
        (EventStatus.NOTIFIED, EventStatus.PENDING, False),
        (EventStatus.RESOLVED, EventStatus.NOTIFIED, False),
        (EventStatus.RESOLVED, EventStatus.PENDING, False),
    ])
    def test_transition_table(self, current, target, allowed):
        assert can_transition(current, target) is allowed

    def test_can_resolve_predicate(self, service, directory, owner):
        a = directory.add_caregiver(owner.id, "Bob")
        event = service.trigger(owner.id, LOCATION)

        assert can_resolve(UserActor(id=owner.id), event) is True
        assert can_resolve(CaregiverActor(id=a.id), event) is True
        assert can_resolve(CaregiverActor(id=owner.id), event) is False
        assert can_resolve(UserActor(id=a.id), event) is False


class TestQueries:

    def test_events_newest_first(self, service, owner, clock):
        first = service.trigger(owner.id, LOCATION)
        clock.advance(minutes=1)
        second = service.trigger(owner.id, LOCATION)

        assert [e.id for e in service.events_for_owner(owner.id)] == [second.id, first.id]

    def test_active_excludes_resolved(self, service, owner, clock):
        first = service.trigger(owner.id, LOCATION)
        clock.advance(minutes=1)
        second = service.trigger(owner.id, LOCATION)
        service.resolve(first.id, UserActor(id=owner.id))

        assert [e.id for e in service.active_events_for_owner(owner.id)] == [second.id]

    def test_unknown_owner(self, service):
        with pytest.raises(NotFound):
            service.events_for_owner("missing-owner")
        with pytest.raises(NotFound):
            service.active_events_for_owner("missing-owner")


class ResolvingChannel(FakeChannel):
    """Delivers, but the owner resolves the event while the fan-out is still running."""

    def __init__(self, resolve):
        super().__init__()
        self.resolve = resolve

    def send(self, caregiver, message):
        self.resolve(message.event_id)
        super().send(caregiver, message)


class FlakyEmergencyRepository:
    """Wraps the in-memory repository and fails to store one caregiver's notification."""

    def __init__(self, inner, failing_caregiver_id):
        self.inner = inner
        self.failing_caregiver_id = failing_caregiver_id

    def add_notification(self, event_id, record):
        if record.caregiver_id == self.failing_caregiver_id:
            raise RuntimeError("db connection lost")
        return self.inner.add_notification(event_id, record)

    def __getattr__(self, name):
        return getattr(self.inner, name)


class TestFanoutRaces:

    def test_resolved_during_fanout_returns_full_resolution(self, settings, directory, events, devices, clock, owner):
        directory.add_caregiver(owner.id, "Bob")
        service = None

        def resolve(event_id):
            service.resolve(event_id, UserActor(id=owner.id))

        fanout = NotificationService(
            settings, {NotificationMethod.EMAIL: ResolvingChannel(resolve)}, events=events, clock=clock
        )
        service = EmergencyService(
            settings, fanout, owners=directory, caregivers=directory,
            events=events, devices=devices, clock=clock
        )

        event = service.trigger(owner.id, LOCATION)

        assert event.status == EventStatus.RESOLVED
        assert event.resolved_at == clock.now
        assert event.resolved_by == owner.id
        assert event.resolved_by_role == "user"
        assert events.status_history[event.id] == [EventStatus.PENDING, EventStatus.RESOLVED]

    def test_recording_failure_does_not_affect_other_caregivers(self, settings, directory, events, devices,
                                                                 clock, owner, follow_ups):
        a = directory.add_caregiver(owner.id, "Bob")
        b = directory.add_caregiver(owner.id, "Carol")
        flaky = FlakyEmergencyRepository(events, a.id)
        fanout = NotificationService(settings, {NotificationMethod.EMAIL: FakeChannel()}, events=flaky, clock=clock)
        service = EmergencyService(
            settings, fanout, owners=directory, caregivers=directory,
            events=flaky, devices=devices, follow_ups=follow_ups, clock=clock
        )

        event = service.trigger(owner.id, LOCATION)

        assert event.status == EventStatus.NOTIFIED
        assert event.notified_caregiver_ids == {b.id}
        assert events.get_event(event.id).notified_caregiver_ids == {b.id}
        follow_ups.schedule.assert_called_once_with(event.id)

    def test_unrecorded_caregiver_retried_on_resume(self, settings, directory, events, devices, clock, owner):
        a = directory.add_caregiver(owner.id, "Bob")
        flaky = FlakyEmergencyRepository(events, a.id)
        email = FakeChannel()
        fanout = NotificationService(settings, {NotificationMethod.EMAIL: email}, events=flaky, clock=clock)
        service = EmergencyService(
            settings, fanout, owners=directory, caregivers=directory,
            events=flaky, devices=devices, clock=clock
        )

        event = service.trigger(owner.id, LOCATION)
        assert event.status == EventStatus.PENDING

        flaky.failing_caregiver_id = None
        resumed = service.resume_fanout(event.id)

        assert resumed.status == EventStatus.NOTIFIED
        assert resumed.notified_caregiver_ids == {a.id}
