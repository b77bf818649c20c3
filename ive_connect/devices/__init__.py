from ive_connect.devices.registry import DeviceRegistry
from ive_connect.devices.session import DeviceSession
from ive_connect.events.models import ConnectionState

__all__ = ["ConnectionState", "DeviceRegistry", "DeviceSession"]
