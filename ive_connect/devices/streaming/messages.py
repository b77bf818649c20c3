"""Wire format of the local streaming protocol (v4 message set).

Every frame is a JSON array of single-key objects::

    [{"RequestServerInfo": {"Id": 1, "ClientName": "...", ...}}]

The key is the message type, ``Id`` correlates replies with requests. Messages the
server sends on its own carry ``Id`` 0.
"""

import json
import math
from dataclasses import dataclass, field
from typing import Any, Optional

from ive_connect.commands.types import (
    DeviceCapabilitySet,
    LinearCommand,
    OscillateCommand,
    PrimitiveCommand,
    RotateCommand,
    VibrateCommand,
)
from ive_connect.exceptions import ProtocolError

PROTOCOL_VERSION_MAJOR = 4
PROTOCOL_VERSION_MINOR = 0

SYSTEM_MESSAGE_ID = 0

DEFAULT_MAX_STEPS = 100

LINEAR_OUTPUTS = ("HwPositionWithDuration", "Position")


@dataclass(frozen=True)
class Message:
    type: str
    id: int
    payload: dict[str, Any] = field(default_factory=dict)


def encode_message(
    message_type: str, message_id: int, payload: Optional[dict[str, Any]] = None
) -> str:
    body = {"Id": message_id, **(payload or {})}
    return json.dumps([{message_type: body}])


def decode_messages(raw: str | bytes) -> list[Message]:
    """Decode one frame into its messages.

    Raises:
        ProtocolError: If the frame is not a JSON array of single-key objects.
    """
    try:
        frame = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON frame: {e}") from e
    if not isinstance(frame, list):
        raise ProtocolError("Frame must be a JSON array")

    messages = []
    for entry in frame:
        if not isinstance(entry, dict) or len(entry) != 1:
            raise ProtocolError(f"Malformed message entry: {entry!r}")
        ((message_type, body),) = entry.items()
        if not isinstance(body, dict):
            raise ProtocolError(f"Malformed body for {message_type}")
        message_id = body.get("Id", SYSTEM_MESSAGE_ID)
        if not isinstance(message_id, int):
            raise ProtocolError(f"Invalid message id {message_id!r}")
        payload = {k: v for k, v in body.items() if k != "Id"}
        messages.append(Message(type=message_type, id=message_id, payload=payload))
    return messages


@dataclass(frozen=True)
class DeviceFeature:
    """One output of a device, e.g. a vibrator motor"""

    feature_index: int
    output_type: str
    max_steps: int = DEFAULT_MAX_STEPS


@dataclass(frozen=True)
class StreamingDevice:
    index: int
    name: str
    features: tuple[DeviceFeature, ...]
    display_name: Optional[str] = None

    @property
    def device_id(self) -> str:
        return str(self.index)

    def features_of(self, *output_types: str) -> list[DeviceFeature]:
        return [f for f in self.features if f.output_type in output_types]

    @property
    def capabilities(self) -> DeviceCapabilitySet:
        types = {f.output_type for f in self.features}
        resolution: dict[str, int] = {}
        for feature in self.features:
            resolution[feature.output_type] = max(
                feature.max_steps, resolution.get(feature.output_type, 0)
            )
        return DeviceCapabilitySet(
            can_linear=any(t in types for t in LINEAR_OUTPUTS),
            can_vibrate="Vibrate" in types,
            can_rotate="Rotate" in types,
            can_oscillate="Oscillate" in types,
            step_resolution=resolution,
        )


def parse_device(payload: dict[str, Any]) -> StreamingDevice:
    """Parse a ``DeviceAdded`` payload or one entry of a ``DeviceList``.

    Raises:
        ProtocolError: If the device index is missing.
    """
    index = payload.get("DeviceIndex")
    if not isinstance(index, int):
        raise ProtocolError(f"Device without index: {payload!r}")

    features: list[DeviceFeature] = []
    raw_features = payload.get("DeviceFeatures") or {}
    if isinstance(raw_features, list):
        raw_features = dict(enumerate(raw_features))
    for key, feature in raw_features.items():
        if not isinstance(feature, dict):
            continue
        feature_index = feature.get("FeatureIndex", key)
        try:
            feature_index = int(feature_index)
        except (TypeError, ValueError):
            continue
        for output_type, output in (feature.get("Output") or {}).items():
            max_steps = DEFAULT_MAX_STEPS
            value_range = output.get("Value") if isinstance(output, dict) else None
            if isinstance(value_range, list) and len(value_range) >= 2:
                max_steps = int(value_range[1])
            features.append(DeviceFeature(feature_index, output_type, max_steps))

    return StreamingDevice(
        index=index,
        name=payload.get("DeviceName", f"Device {index}"),
        features=tuple(features),
        display_name=payload.get("DeviceDisplayName"),
    )


def parse_device_list(payload: dict[str, Any]) -> list[StreamingDevice]:
    devices = payload.get("Devices") or {}
    entries = devices.values() if isinstance(devices, dict) else devices
    return [parse_device(entry) for entry in entries]


def to_steps(value: float, max_steps: int) -> int:
    return math.ceil(max_steps * min(1.0, max(0.0, value)))


def output_commands(device: StreamingDevice, command: PrimitiveCommand) -> list[dict[str, Any]]:
    """Build the ``OutputCmd`` payloads for one primitive on one device."""
    if isinstance(command, LinearCommand):
        features = device.features_of("HwPositionWithDuration")
        if features:
            return [
                _output(
                    device,
                    f,
                    "HwPositionWithDuration",
                    {
                        "Value": to_steps(command.position, f.max_steps),
                        "Duration": round(command.duration_ms),
                    },
                )
                for f in features
            ]
        return [
            _output(device, f, "Position", {"Value": to_steps(command.position, f.max_steps)})
            for f in device.features_of("Position")
        ]

    if isinstance(command, VibrateCommand):
        output_type = "Vibrate"
    elif isinstance(command, RotateCommand):
        output_type = "Rotate"
    elif isinstance(command, OscillateCommand):
        output_type = "Oscillate"
    else:
        raise TypeError(f"Unsupported command {command!r}")

    payloads = []
    for feature in device.features_of(output_type):
        value = to_steps(command.speed, feature.max_steps)
        payloads.append(_output(device, feature, output_type, {"Value": value}))
    return payloads


def _output(
    device: StreamingDevice, feature: DeviceFeature, output_type: str, body: dict[str, Any]
) -> dict[str, Any]:
    return {
        "DeviceIndex": device.index,
        "FeatureIndex": feature.feature_index,
        "Command": {output_type: body},
    }
