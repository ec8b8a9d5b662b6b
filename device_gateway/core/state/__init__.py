"""State - máquina de estados de aprovisionamiento."""

from .engine import DeviceStateEngine
from .models import Device, VALID_TRANSITIONS, is_valid_transition, sources_for
from .repository import DeviceRepository

__all__ = [
    "Device",
    "DeviceRepository",
    "DeviceStateEngine",
    "VALID_TRANSITIONS",
    "is_valid_transition",
    "sources_for",
]
