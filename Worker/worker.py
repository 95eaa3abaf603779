"""
MQTT bridge between the wearable devices and the HTTP API.

Devices publish to carelink/<deviceID>/telemetry and carelink/<deviceID>/emergency.
Readings are forwarded to the API, and the classification comes back to the
device on carelink/<deviceID>/command so the glasses can vibrate when an
obstacle is critically close.
"""
import os
import json
import logging
import sys
from typing import Optional

import paho.mqtt.client as mqtt
import requests

FASTAPI_URL = os.getenv("FASTAPI_URL", "http://fastapi:8000")
MQTT_BROKER = os.getenv("MQTT_BROKER", "mqtt")
MQTT_PORT = int(os.getenv("MQTT_PORT", "1883"))
MQTT_USER = os.getenv("MQTT_USER", "carelink")
MQTT_PASSWORD = os.getenv("MQTT_PASSWORD", "carelink")

# Subscribe to all device topics
TOPIC_TELEMETRY = "carelink/+/telemetry"
TOPIC_EMERGENCY = "carelink/+/emergency"

REQUEST_TIMEOUT_SECONDS = 5
# Emergency fan-out waits on every caregiver channel before the API answers
EMERGENCY_TIMEOUT_SECONDS = 30

logger = logging.getLogger("worker")


def device_id_from_topic(topic: str) -> str:
    # carelink/<deviceID>/<kind>
    return topic.split('/')[1]


def location_from_payload(payload: dict) -> Optional[dict]:
    """Devices send either a nested location object or flat latitude/longitude fields."""
    location = payload.get("location")
    if location:
        return location
    if payload.get("latitude") is not None and payload.get("longitude") is not None:
        return {
            "latitude": payload["latitude"],
            "longitude": payload["longitude"],
            "accuracy": payload.get("accuracy")
        }
    return None


def forward_telemetry(device_id: str, payload: dict) -> Optional[dict]:
    body = {
        "distance": payload.get("distance"),
        "batteryLevel": payload.get("batteryLevel"),
        "location": location_from_payload(payload),
        "firmwareVersion": payload.get("firmwareVersion"),
        "timestamp": payload.get("timestamp")
    }
    try:
        response = requests.post(
            f"{FASTAPI_URL}/devices/{device_id}/telemetry",
            json=body,
            timeout=REQUEST_TIMEOUT_SECONDS
        )
    except requests.RequestException as e:
        logger.error(f"[{device_id}] Error forwarding telemetry: {e}")
        return None

    if response.status_code != 200:
        logger.warning(f"[{device_id}] Telemetry rejected: {response.status_code} {response.text}")
        return None
    return response.json()


def forward_emergency(device_id: str, payload: dict) -> Optional[dict]:
    try:
        response = requests.post(
            f"{FASTAPI_URL}/devices/{device_id}/emergency",
            json={"location": location_from_payload(payload)},
            timeout=EMERGENCY_TIMEOUT_SECONDS
        )
    except requests.RequestException as e:
        logger.error(f"[{device_id}] Error forwarding emergency: {e}")
        return None

    if response.status_code != 200:
        logger.warning(f"[{device_id}] Emergency rejected: {response.status_code} {response.text}")
        return None
    return response.json()


def build_command(result: dict) -> dict:
    classification = result.get("classification", {})
    distance_level = classification.get("distance_level", "none")
    battery_level = classification.get("battery_level", "none")
    return {
        "vibrate": distance_level == "critical",
        "distance_level": distance_level,
        "battery_level": battery_level
    }


def on_message_telemetry(client, userdata, msg):
    """Handle telemetry messages from devices"""
    try:
        device_id = device_id_from_topic(msg.topic)
        payload = json.loads(msg.payload.decode())
    except (IndexError, ValueError) as e:
        logger.error(f"[TELEMETRY] Malformed message on {msg.topic}: {e}")
        return

    result = forward_telemetry(device_id, payload)
    if result is None:
        return

    command = build_command(result)
    client.publish(f"carelink/{device_id}/command", json.dumps(command), qos=1)

    logger.info(
        f"[{device_id}] distance={payload.get('distance')}cm ({command['distance_level']}) "
        f"battery={payload.get('batteryLevel')}% ({command['battery_level']})"
    )


def on_message_emergency(client, userdata, msg):
    """Handle emergency button presses from devices"""
    try:
        device_id = device_id_from_topic(msg.topic)
        payload = json.loads(msg.payload.decode())
    except (IndexError, ValueError) as e:
        logger.error(f"[EMERGENCY] Malformed message on {msg.topic}: {e}")
        return

    logger.warning(f"[{device_id}] Emergency triggered on device")
    result = forward_emergency(device_id, payload)

    ack = {
        "emergency_ack": result is not None,
        "emergency_id": result.get("id") if result else None,
        "notified": result.get("notified_count", 0) if result else 0
    }
    client.publish(f"carelink/{device_id}/command", json.dumps(ack), qos=1)

    if result:
        logger.info(f"[{device_id}] Emergency {result.get('id')} status={result.get('status')} notified={ack['notified']}")


def on_connect(client, userdata, flags, reason_code, properties):
    logger.info(f"Connected to MQTT broker with result code {reason_code}")

    client.subscribe(TOPIC_TELEMETRY, qos=1)
    client.subscribe(TOPIC_EMERGENCY, qos=1)

    client.message_callback_add(TOPIC_TELEMETRY, on_message_telemetry)
    client.message_callback_add(TOPIC_EMERGENCY, on_message_emergency)

    logger.info(f"Worker subscribed to {TOPIC_TELEMETRY} and {TOPIC_EMERGENCY}, forwarding to {FASTAPI_URL}")


def main():
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
    client.username_pw_set(MQTT_USER, MQTT_PASSWORD)
    client.on_connect = on_connect

    logger.info("Connecting to MQTT broker...")
    client.connect(MQTT_BROKER, MQTT_PORT, 60)
    client.loop_forever()


if __name__ == "__main__":
    main()
