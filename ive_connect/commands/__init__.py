from ive_connect.commands.translator import (
    CommandTranslator,
    movement_intensity,
    normalize_position,
    to_device_position,
    translate,
)
from ive_connect.commands.types import (
    DeviceCapabilitySet,
    DevicePreference,
    LinearCommand,
    OscillateCommand,
    PrimitiveCommand,
    RotateCommand,
    VibrateCommand,
)

__all__ = [
    "CommandTranslator",
    "DeviceCapabilitySet",
    "DevicePreference",
    "LinearCommand",
    "OscillateCommand",
    "PrimitiveCommand",
    "RotateCommand",
    "VibrateCommand",
    "movement_intensity",
    "normalize_position",
    "to_device_position",
    "translate",
]
