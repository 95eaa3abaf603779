from config.database import get_db_connection, parse_uuid
from models.domain_models import Location, TelemetryReading
from typing import List, Dict

def _row_to_reading(row: Dict) -> TelemetryReading:
    return TelemetryReading(
        id=row['id'],
        owner_id=row['owner_id'],
        device_id=row['device_id'],
        distance=row['distance'],
        battery_level=row['battery_level'],
        location=Location(
            latitude=row['latitude'],
            longitude=row['longitude'],
            accuracy=row['accuracy']
        ),
        source=row['source'],
        timestamp=row['timestamp']
    )

class TelemetryRepository:
    """Append-only reading history. Rows are never updated or deleted."""

    @staticmethod
    def save_reading(reading: TelemetryReading) -> TelemetryReading:
        with get_db_connection() as conn:
            cur = conn.cursor()
            cur.execute("""
                INSERT INTO telemetry_readings
                (owner_id, device_id, distance, battery_level, latitude, longitude,
                 accuracy, source, timestamp)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id::text AS id
            """, (
                reading.owner_id,
                reading.device_id,
                reading.distance,
                reading.battery_level,
                reading.location.latitude,
                reading.location.longitude,
                reading.location.accuracy,
                reading.source.value,
                reading.timestamp
            ))
            return reading.model_copy(update={'id': cur.fetchone()['id']})

    @staticmethod
    def get_readings(owner_id: str, limit: int) -> List[TelemetryReading]:
        owner_uuid = parse_uuid(owner_id)
        if owner_uuid is None:
            return []
        with get_db_connection() as conn:
            cur = conn.cursor()
            cur.execute("""
                SELECT id::text AS id, owner_id::text AS owner_id, device_id, distance,
                       battery_level, latitude, longitude, accuracy, source, timestamp
                FROM telemetry_readings
                WHERE owner_id = %s
                ORDER BY timestamp DESC
                LIMIT %s
            """, (owner_uuid, limit))
            return [_row_to_reading(row) for row in cur.fetchall()]
