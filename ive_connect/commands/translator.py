"""Capability-aware translation of timeline steps into device primitives.

Everything here is pure and synchronous; the sessions decide how the resulting
primitives go on the wire.
"""

from ive_connect.commands.types import (
    DeviceCapabilitySet,
    DevicePreference,
    LinearCommand,
    OscillateCommand,
    PrimitiveCommand,
    RotateCommand,
    VibrateCommand,
)

# |delta| of 20 position units already drives a full-intensity actuator
MOVEMENT_GAIN = 5.0
DEAD_ZONE = 0.05


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return min(high, max(low, value))


def normalize_position(pos: float, preference: DevicePreference) -> float:
    """Map a 0..100 position into the device's configured 0..1 range."""
    normalized = clamp(pos / 100)
    if preference.invert:
        normalized = 1.0 - normalized
    return preference.range_min + normalized * (preference.range_max - preference.range_min)


def to_device_position(pos: float, preference: DevicePreference) -> int:
    """Same as :func:`normalize_position`, scaled back to an integer 0..100."""
    return round(normalize_position(pos, preference) * 100)


def movement_intensity(
    pos: float, prev_pos: float, preference: DevicePreference, gain: float = MOVEMENT_GAIN
) -> float:
    """Intensity of the movement proxy for non-linear actuators.

    An unchanged position always yields 0 so the actuator does not stay on.
    """
    if pos == prev_pos:
        return 0.0
    return clamp(abs(pos - prev_pos) / 100 * preference.intensity * gain)


class CommandTranslator:
    """Translates (position, previous position, duration) into primitive commands.

    Args:
        movement_gain: Scale from position delta to actuator intensity.
        dead_zone: Non-zero intensities below this value are not sent.
    """

    def __init__(self, movement_gain: float = MOVEMENT_GAIN, dead_zone: float = DEAD_ZONE):
        self._movement_gain = movement_gain
        self._dead_zone = dead_zone

    def translate(
        self,
        pos: float,
        prev_pos: float,
        duration_ms: int,
        capabilities: DeviceCapabilitySet,
        preference: DevicePreference,
    ) -> list[PrimitiveCommand]:
        if not preference.enabled:
            return []

        commands: list[PrimitiveCommand] = []
        if preference.use_linear and capabilities.can_linear:
            commands.append(
                LinearCommand(
                    position=normalize_position(pos, preference), duration_ms=int(duration_ms)
                )
            )

        wants_intensity = (
            (preference.use_vibrate and capabilities.can_vibrate)
            or (preference.use_rotate and capabilities.can_rotate)
            or (preference.use_oscillate and capabilities.can_oscillate)
        )
        if not wants_intensity:
            return commands

        speed = movement_intensity(pos, prev_pos, preference, self._movement_gain)
        if 0 < speed < self._dead_zone:
            return commands

        if preference.use_vibrate and capabilities.can_vibrate:
            commands.append(VibrateCommand(speed=speed))
        if preference.use_rotate and capabilities.can_rotate:
            commands.append(RotateCommand(speed=speed))
        if preference.use_oscillate and capabilities.can_oscillate:
            commands.append(OscillateCommand(speed=speed))
        return commands


_default_translator = CommandTranslator()


def translate(
    pos: float,
    prev_pos: float,
    duration_ms: int,
    capabilities: DeviceCapabilitySet,
    preference: DevicePreference,
) -> list[PrimitiveCommand]:
    """Translate with the default gain and dead zone."""
    return _default_translator.translate(pos, prev_pos, duration_ms, capabilities, preference)
