from config.database import get_db_connection, parse_uuid
from models.domain_models import Caregiver, Owner
from typing import Optional, List

class UserRepository:
    """Owner and caregiver lookups. Account management lives outside this service."""

    @staticmethod
    def get_owner(owner_id: str) -> Optional[Owner]:
        owner_uuid = parse_uuid(owner_id)
        if owner_uuid is None:
            return None
        with get_db_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT id::text AS id, name, email FROM users WHERE id = %s",
                (owner_uuid,)
            )
            result = cur.fetchone()
            return Owner(**result) if result else None

    @staticmethod
    def get_linked_caregivers(owner_id: str) -> List[Caregiver]:
        owner_uuid = parse_uuid(owner_id)
        if owner_uuid is None:
            return []
        with get_db_connection() as conn:
            cur = conn.cursor()
            cur.execute("""
                SELECT c.id::text AS id, c.name, c.email, c.phone, c.push_enabled
                FROM caregiver_links cl
                JOIN caregivers c ON c.id = cl.caregiver_id
                WHERE cl.owner_id = %s
                ORDER BY cl.linked_at ASC
            """, (owner_uuid,))
            return [Caregiver(**row) for row in cur.fetchall()]
