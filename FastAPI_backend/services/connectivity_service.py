from datetime import datetime
from typing import Callable, Optional

from config.settings import AlertSettings
from models.domain_models import DeviceStatus
from repositories.device_repository import DeviceRepository
from repositories.user_repository import UserRepository
from services.errors import NotFound
from services.validation import as_utc, utc_now


class ConnectivityService:
    """Derives device liveness from the last heartbeat. Nothing here is persisted."""

    def __init__(self, settings: AlertSettings, devices=DeviceRepository,
                 owners=UserRepository, clock: Callable[[], datetime] = utc_now):
        self.settings = settings
        self.devices = devices
        self.owners = owners
        self.clock = clock

    def is_connected(self, owner_id: str, now: Optional[datetime] = None) -> bool:
        state = self.devices.get_connectivity(owner_id)
        if state is None:
            return False
        now = as_utc(now, self.clock())
        return now - as_utc(state.last_heartbeat, now) <= self.settings.heartbeat_timeout

    def device_status(self, owner_id: str, now: Optional[datetime] = None) -> DeviceStatus:
        if not self.owners.get_owner(owner_id):
            raise NotFound(f"Owner {owner_id} not found")

        now = as_utc(now, self.clock())
        state = self.devices.get_connectivity(owner_id)
        if state is None:
            return DeviceStatus(owner_id=owner_id, connected=False)

        last_heartbeat = as_utc(state.last_heartbeat, now)
        elapsed = now - last_heartbeat
        return DeviceStatus(
            owner_id=owner_id,
            connected=elapsed <= self.settings.heartbeat_timeout,
            last_heartbeat=last_heartbeat,
            firmware_version=state.firmware_version,
            seconds_since_heartbeat=elapsed.total_seconds()
        )
