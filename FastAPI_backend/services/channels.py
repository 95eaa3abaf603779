"""
Delivery channels for emergency alerts.

Each channel sends one message to one caregiver and raises DeliveryFailure
when it cannot. Email goes out over SMTP; push alerts are published to the
caregiver's MQTT topic, which the mobile app subscribes to.
"""

import json
import os
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import paho.mqtt.client as mqtt
from pydantic import BaseModel

from config.logging_config import get_logger
from models.domain_models import Caregiver, NotificationMethod
from services.errors import DeliveryFailure

logger = get_logger(__name__)

PUSH_TOPIC = "carelink/caregivers/{caregiver_id}/alerts"


class AlertMessage(BaseModel):
    event_id: str
    owner_id: str
    owner_name: str
    severity: str
    subject: str
    text: str
    html: str
    map_link: str


class NotificationChannel:
    method: NotificationMethod

    def send(self, caregiver: Caregiver, message: AlertMessage) -> None:
        raise NotImplementedError


class EmailChannel(NotificationChannel):
    method = NotificationMethod.EMAIL

    def __init__(self, host: str, port: int, user: Optional[str], password: Optional[str],
                 from_email: str, from_name: str = "CareLink Alerts", timeout: float = 5.0):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout

    @classmethod
    def from_env(cls, timeout: float = 5.0) -> "EmailChannel":
        return cls(
            host=os.getenv("SMTP_HOST", "localhost"),
            port=int(os.getenv("SMTP_PORT", "587")),
            user=os.getenv("SMTP_EMAIL"),
            password=os.getenv("SMTP_PASSWORD"),
            from_email=os.getenv("FROM_EMAIL", "alerts@carelink.local"),
            from_name=os.getenv("FROM_NAME", "CareLink Alerts"),
            timeout=timeout
        )

    def _build(self, caregiver: Caregiver, message: AlertMessage) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = caregiver.email
        msg.attach(MIMEText(message.text, "plain"))
        msg.attach(MIMEText(message.html, "html"))
        return msg

    def send(self, caregiver: Caregiver, message: AlertMessage) -> None:
        if not caregiver.email:
            raise DeliveryFailure("Caregiver has no email address", caregiver.id, self.method.value)

        msg = self._build(caregiver, message)
        try:
            if self.port == 465:
                server = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
            else:
                server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
            with server:
                if self.port != 465:
                    server.starttls()
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.sendmail(self.from_email, [caregiver.email], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryFailure(f"Email to {caregiver.email} failed: {e}", caregiver.id, self.method.value) from e

        logger.info(f"Emergency email sent to caregiver {caregiver.id} for event {message.event_id}")


class PushChannel(NotificationChannel):
    method = NotificationMethod.PUSH

    def __init__(self, client: mqtt.Client, timeout: float = 5.0):
        self.client = client
        self.timeout = timeout

    @classmethod
    def from_env(cls, timeout: float = 5.0) -> "PushChannel":
        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        user = os.getenv("MQTT_USER")
        if user:
            client.username_pw_set(user, os.getenv("MQTT_PASSWORD"))
        client.connect(os.getenv("MQTT_BROKER", "localhost"), int(os.getenv("MQTT_PORT", "1883")), 60)
        client.loop_start()
        return cls(client, timeout)

    def send(self, caregiver: Caregiver, message: AlertMessage) -> None:
        topic = PUSH_TOPIC.format(caregiver_id=caregiver.id)
        payload = {
            "event_id": message.event_id,
            "owner_id": message.owner_id,
            "owner_name": message.owner_name,
            "severity": message.severity,
            "title": message.subject,
            "body": message.text,
            "map_link": message.map_link
        }
        try:
            info = self.client.publish(topic, json.dumps(payload), qos=1)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise DeliveryFailure(
                    f"Push to {topic} rejected: {mqtt.error_string(info.rc)}", caregiver.id, self.method.value
                )
            info.wait_for_publish(timeout=self.timeout)
        except (RuntimeError, ValueError) as e:
            raise DeliveryFailure(f"Push to {topic} failed: {e}", caregiver.id, self.method.value) from e

        if not info.is_published():
            raise DeliveryFailure(f"Push to {topic} not acknowledged", caregiver.id, self.method.value)

        logger.info(f"Emergency push sent to caregiver {caregiver.id} for event {message.event_id}")

    def close(self) -> None:
        self.client.loop_stop()
        self.client.disconnect()
