"""Repository layer for database access"""
from .device_repository import DeviceRepository
from .telemetry_repository import TelemetryRepository
from .user_repository import UserRepository
from .emergency_repository import EmergencyRepository
