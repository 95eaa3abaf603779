import math
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime
from typing import Callable, Dict, List, Optional

from config.logging_config import get_logger
from config.settings import AlertSettings
from models.domain_models import (
    Caregiver, DeliveryOutcome, EmergencyEvent, NotificationMethod, Owner
)
from repositories.emergency_repository import EmergencyRepository
from services.channels import AlertMessage, NotificationChannel
from services.validation import utc_now

logger = get_logger(__name__)

SEVERITY_EMERGENCY = "emergency"
SEVERITY_FOLLOW_UP = "follow-up"


def build_alert_message(event: EmergencyEvent, owner: Owner, severity: str) -> AlertMessage:
    map_link = event.location.map_link
    if severity == SEVERITY_FOLLOW_UP:
        subject = f"REMINDER: EMERGENCY ALERT - {owner.name} Still Needs Help"
        headline = f"{owner.name} triggered an emergency alert that has not been resolved yet."
    else:
        subject = f"EMERGENCY ALERT - {owner.name} Needs Help"
        headline = f"{owner.name} has triggered an emergency alert."

    source_note = ""
    if event.source.value == "device":
        source_note = "This alert was generated automatically by the wearable device."

    text = (
        f"EMERGENCY ALERT!\n\n"
        f"{headline}\n\n"
        f"Location: {map_link}\n\n"
        f"Please respond immediately!\n"
        f"{source_note}"
    ).strip()
    html = (
        f'<h1 style="color: red;">EMERGENCY ALERT!</h1>'
        f"<p><strong>{headline}</strong></p>"
        f'<p>Current Location: <a href="{map_link}" target="_blank">View on Google Maps</a></p>'
        f'<p style="font-weight: bold;">Please respond immediately!</p>'
        + (f"<p>{source_note}</p>" if source_note else "")
    )
    return AlertMessage(
        event_id=event.id,
        owner_id=owner.id,
        owner_name=owner.name,
        severity=severity,
        subject=subject,
        text=text,
        html=html,
        map_link=map_link
    )


class NotificationService:
    """
    Fans one emergency out to its recipients.

    Every recipient gets an independent attempt on a bounded thread pool. A
    failure or a slow channel for one caregiver never blocks the others;
    attempts still running when the time bound expires count as failed.
    Only successful deliveries are recorded on the event.
    """

    def __init__(self, settings: AlertSettings,
                 channels: Dict[NotificationMethod, NotificationChannel],
                 events=EmergencyRepository,
                 clock: Callable[[], datetime] = utc_now):
        self.settings = settings
        self.channels = channels
        self.events = events
        self.clock = clock

    def channel_for(self, caregiver: Caregiver) -> Optional[NotificationChannel]:
        if caregiver.push_enabled and NotificationMethod.PUSH in self.channels:
            return self.channels[NotificationMethod.PUSH]
        return self.channels.get(NotificationMethod.EMAIL)

    def dispatch(self, event: EmergencyEvent, recipients: List[Caregiver], owner: Owner,
                 severity: str = SEVERITY_EMERGENCY) -> List[DeliveryOutcome]:
        if not recipients:
            return []

        message = build_alert_message(event, owner, severity)
        workers = min(len(recipients), self.settings.fanout_max_workers)
        # Later recipients may queue behind earlier ones, so the bound grows with the number of rounds
        bound = self.settings.delivery_timeout_seconds * math.ceil(len(recipients) / workers)

        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fanout")
        try:
            futures = {
                executor.submit(self._deliver, caregiver, message): caregiver
                for caregiver in recipients
            }
            done, _ = wait(futures, timeout=bound)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        outcomes = []
        for future, caregiver in futures.items():
            if future in done:
                outcome = future.result()
            else:
                outcome = DeliveryOutcome(
                    caregiver_id=caregiver.id,
                    method=self._method_for(caregiver),
                    delivered=False,
                    attempted_at=self.clock(),
                    error=f"timed out after {bound:.1f}s"
                )
            if outcome.delivered:
                outcome = self._record_success(event, outcome)
            outcomes.append(outcome)

            if not outcome.delivered:
                logger.warning(
                    f"Delivery to caregiver {outcome.caregiver_id} for event {event.id} "
                    f"failed via {outcome.method.value}: {outcome.error}"
                )

        delivered = sum(1 for o in outcomes if o.delivered)
        logger.info(f"Fan-out for event {event.id}: {delivered}/{len(outcomes)} delivered ({severity})")
        return outcomes

    def _method_for(self, caregiver: Caregiver) -> NotificationMethod:
        channel = self.channel_for(caregiver)
        return channel.method if channel else NotificationMethod.EMAIL

    def _deliver(self, caregiver: Caregiver, message: AlertMessage) -> DeliveryOutcome:
        channel = self.channel_for(caregiver)
        if channel is None:
            return DeliveryOutcome(
                caregiver_id=caregiver.id,
                method=NotificationMethod.EMAIL,
                delivered=False,
                attempted_at=self.clock(),
                error="no notification channel configured"
            )
        try:
            channel.send(caregiver, message)
        except Exception as e:
            # Any channel error is a per-recipient failure, never a dispatch failure
            return DeliveryOutcome(
                caregiver_id=caregiver.id,
                method=channel.method,
                delivered=False,
                attempted_at=self.clock(),
                error=str(e)
            )
        return DeliveryOutcome(
            caregiver_id=caregiver.id,
            method=channel.method,
            delivered=True,
            attempted_at=self.clock()
        )

    def _record_success(self, event: EmergencyEvent, outcome: DeliveryOutcome) -> DeliveryOutcome:
        """Store a delivered outcome. A storage error turns it into a failed outcome."""
        record = outcome.to_record()
        try:
            inserted = self.events.add_notification(event.id, record)
        except Exception as e:
            logger.error(
                f"Delivered to caregiver {outcome.caregiver_id} for event {event.id} "
                f"but recording it failed: {e}"
            )
            return outcome.model_copy(update={"delivered": False, "error": f"not recorded: {e}"})

        if inserted and outcome.caregiver_id not in event.notified_caregiver_ids:
            event.notifications.append(record)
        elif not inserted:
            logger.info(f"Caregiver {outcome.caregiver_id} already recorded for event {event.id}")
        return outcome
