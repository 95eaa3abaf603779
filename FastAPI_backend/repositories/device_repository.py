from config.database import get_db_connection, parse_uuid
from models.domain_models import DeviceConnectivityState
from datetime import datetime
from typing import Optional, Dict

class DeviceRepository:
    @staticmethod
    def get_device_by_id(device_id: str) -> Optional[Dict]:
        with get_db_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT id::text AS id, device_id, owner_id::text AS owner_id FROM devices WHERE device_id = %s",
                (device_id,)
            )
            result = cur.fetchone()
            return dict(result) if result else None

    @staticmethod
    def register_device(device_id: str, owner_id: str) -> Dict:
        with get_db_connection() as conn:
            cur = conn.cursor()
            cur.execute("""
                INSERT INTO devices (device_id, owner_id) VALUES (%s, %s)
                ON CONFLICT (device_id) DO UPDATE SET owner_id = EXCLUDED.owner_id
                RETURNING id::text AS id, device_id, owner_id::text AS owner_id
            """, (device_id, owner_id))
            return dict(cur.fetchone())

    @staticmethod
    def record_heartbeat(owner_id: str, timestamp: datetime,
                         firmware_version: Optional[str] = None) -> DeviceConnectivityState:
        # GREATEST keeps late, out-of-order readings from moving liveness backwards
        with get_db_connection() as conn:
            cur = conn.cursor()
            cur.execute("""
                INSERT INTO device_connectivity (owner_id, last_heartbeat, firmware_version)
                VALUES (%s, %s, %s)
                ON CONFLICT (owner_id) DO UPDATE SET
                    last_heartbeat = GREATEST(device_connectivity.last_heartbeat, EXCLUDED.last_heartbeat),
                    firmware_version = COALESCE(EXCLUDED.firmware_version, device_connectivity.firmware_version)
                RETURNING owner_id::text AS owner_id, last_heartbeat, firmware_version
            """, (owner_id, timestamp, firmware_version))
            return DeviceConnectivityState(**cur.fetchone())

    @staticmethod
    def get_connectivity(owner_id: str) -> Optional[DeviceConnectivityState]:
        owner_uuid = parse_uuid(owner_id)
        if owner_uuid is None:
            return None
        with get_db_connection() as conn:
            cur = conn.cursor()
            cur.execute("""
                SELECT owner_id::text AS owner_id, last_heartbeat, firmware_version
                FROM device_connectivity WHERE owner_id = %s
            """, (owner_uuid,))
            result = cur.fetchone()
            return DeviceConnectivityState(**result) if result else None
