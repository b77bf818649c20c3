from dataclasses import dataclass
from typing import Union

from pydantic import BaseModel, Field, model_validator


class DeviceCapabilitySet(BaseModel):
    """What a device can do, fixed for the lifetime of the device.

    ``step_resolution`` maps an output type (e.g. ``"Vibrate"``) to the number of
    discrete steps the device accepts for it.
    """

    model_config = {"frozen": True}

    can_linear: bool = False
    can_vibrate: bool = False
    can_rotate: bool = False
    can_oscillate: bool = False
    step_resolution: dict[str, int] = Field(default_factory=dict)

    @property
    def has_any(self) -> bool:
        return self.can_linear or self.can_vibrate or self.can_rotate or self.can_oscillate


class DevicePreference(BaseModel):
    """User settings of one device.

    Frozen: an update replaces the whole preference, so a dispatch always reads a
    consistent snapshot.
    """

    model_config = {"frozen": True}

    enabled: bool = True
    use_linear: bool = True
    use_vibrate: bool = True
    use_rotate: bool = True
    use_oscillate: bool = True
    intensity: float = Field(default=1.0, ge=0, le=1)
    range_min: float = Field(default=0.0, ge=0, le=1)
    range_max: float = Field(default=1.0, ge=0, le=1)
    invert: bool = False

    @model_validator(mode="after")
    def _check_range(self) -> "DevicePreference":
        if self.range_min > self.range_max:
            raise ValueError(
                f"range_min ({self.range_min}) must not exceed range_max ({self.range_max})"
            )
        return self

    @classmethod
    def from_capabilities(cls, capabilities: DeviceCapabilitySet) -> "DevicePreference":
        """Default preference enabling every primitive the device supports."""
        return cls(
            use_linear=capabilities.can_linear,
            use_vibrate=capabilities.can_vibrate,
            use_rotate=capabilities.can_rotate,
            use_oscillate=capabilities.can_oscillate,
        )


@dataclass(frozen=True)
class LinearCommand:
    """Move to ``position`` (0..1) within ``duration_ms``"""

    position: float
    duration_ms: int


@dataclass(frozen=True)
class VibrateCommand:
    speed: float


@dataclass(frozen=True)
class RotateCommand:
    speed: float


@dataclass(frozen=True)
class OscillateCommand:
    speed: float


PrimitiveCommand = Union[LinearCommand, VibrateCommand, RotateCommand, OscillateCommand]
