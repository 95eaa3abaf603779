from config.database import get_db_connection, parse_uuid
from models.domain_models import (
    EmergencyEvent, EventSource, Location, NotificationRecord
)
from datetime import datetime
from typing import Optional, List, Dict

_EVENT_COLUMNS = """
    id::text AS id, owner_id::text AS owner_id, latitude, longitude, accuracy,
    status, source, created_at, resolved_at, resolved_by, resolved_by_role
"""

def _row_to_event(row: Dict, notifications: List[NotificationRecord]) -> EmergencyEvent:
    return EmergencyEvent(
        id=row['id'],
        owner_id=row['owner_id'],
        location=Location(
            latitude=row['latitude'],
            longitude=row['longitude'],
            accuracy=row['accuracy']
        ),
        status=row['status'],
        source=row['source'],
        created_at=row['created_at'],
        resolved_at=row['resolved_at'],
        resolved_by=row['resolved_by'],
        resolved_by_role=row['resolved_by_role'],
        notifications=notifications
    )

def _fetch_notifications(cur, event_ids: List[str]) -> Dict[str, List[NotificationRecord]]:
    by_event = {event_id: [] for event_id in event_ids}
    if not event_ids:
        return by_event
    cur.execute("""
        SELECT event_id::text AS event_id, caregiver_id::text AS caregiver_id,
               notified_at, method, outcome
        FROM emergency_notifications
        WHERE event_id = ANY(%s::uuid[])
        ORDER BY id ASC
    """, (event_ids,))
    for row in cur.fetchall():
        by_event[row['event_id']].append(NotificationRecord(
            caregiver_id=row['caregiver_id'],
            notified_at=row['notified_at'],
            method=row['method'],
            outcome=row['outcome']
        ))
    return by_event

class EmergencyRepository:
    @staticmethod
    def create_event(owner_id: str, location: Location, source: EventSource,
                     created_at: datetime) -> EmergencyEvent:
        with get_db_connection() as conn:
            cur = conn.cursor()
            cur.execute(f"""
                INSERT INTO emergency_events
                (owner_id, latitude, longitude, accuracy, status, source, created_at)
                VALUES (%s, %s, %s, %s, 'pending', %s, %s)
                RETURNING {_EVENT_COLUMNS}
            """, (
                owner_id, location.latitude, location.longitude,
                location.accuracy, source.value, created_at
            ))
            return _row_to_event(cur.fetchone(), [])

    @staticmethod
    def get_event(event_id: str) -> Optional[EmergencyEvent]:
        event_uuid = parse_uuid(event_id)
        if event_uuid is None:
            return None
        with get_db_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                f"SELECT {_EVENT_COLUMNS} FROM emergency_events WHERE id = %s",
                (event_uuid,)
            )
            row = cur.fetchone()
            if not row:
                return None
            notifications = _fetch_notifications(cur, [row['id']])
            return _row_to_event(row, notifications[row['id']])

    @staticmethod
    def get_events_for_owner(owner_id: str, active_only: bool = False) -> List[EmergencyEvent]:
        owner_uuid = parse_uuid(owner_id)
        if owner_uuid is None:
            return []
        with get_db_connection() as conn:
            cur = conn.cursor()
            status_filter = "AND status <> 'resolved'" if active_only else ""
            cur.execute(f"""
                SELECT {_EVENT_COLUMNS}
                FROM emergency_events
                WHERE owner_id = %s {status_filter}
                ORDER BY created_at DESC
            """, (owner_uuid,))
            rows = cur.fetchall()
            notifications = _fetch_notifications(cur, [row['id'] for row in rows])
            return [_row_to_event(row, notifications[row['id']]) for row in rows]

    @staticmethod
    def add_notification(event_id: str, record: NotificationRecord) -> bool:
        """Insert a successful delivery. Returns False if the caregiver was already recorded."""
        with get_db_connection() as conn:
            cur = conn.cursor()
            cur.execute("""
                INSERT INTO emergency_notifications
                (event_id, caregiver_id, notified_at, method, outcome)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (event_id, caregiver_id) DO NOTHING
                RETURNING id
            """, (
                event_id, record.caregiver_id, record.notified_at,
                record.method.value, record.outcome
            ))
            return cur.fetchone() is not None

    @staticmethod
    def mark_notified(event_id: str) -> bool:
        with get_db_connection() as conn:
            cur = conn.cursor()
            cur.execute("""
                UPDATE emergency_events SET status = 'notified'
                WHERE id = %s AND status = 'pending'
            """, (event_id,))
            return cur.rowcount == 1

    @staticmethod
    def resolve_event(event_id: str, actor_id: str, actor_role: str,
                      resolved_at: datetime) -> Optional[EmergencyEvent]:
        """Compare-and-set to resolved. Returns None when another caller already resolved it."""
        with get_db_connection() as conn:
            cur = conn.cursor()
            cur.execute(f"""
                UPDATE emergency_events
                SET status = 'resolved', resolved_at = %s, resolved_by = %s, resolved_by_role = %s
                WHERE id = %s AND status <> 'resolved'
                RETURNING {_EVENT_COLUMNS}
            """, (resolved_at, actor_id, actor_role, event_id))
            row = cur.fetchone()
            if not row:
                return None
            notifications = _fetch_notifications(cur, [row['id']])
            return _row_to_event(row, notifications[row['id']])
