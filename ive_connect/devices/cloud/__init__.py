from ive_connect.devices.cloud.api import CloudApi
from ive_connect.devices.cloud.session import CloudSession
from ive_connect.devices.cloud.sse import ServerSentEvent, iter_sse
from ive_connect.devices.cloud.stream_buffer import PointStreamBuffer
from ive_connect.devices.cloud.types import (
    CloudDeviceInfo,
    HspPoint,
    HspState,
    StrokeSettings,
    parse_play_state,
)

__all__ = [
    "CloudApi",
    "CloudDeviceInfo",
    "CloudSession",
    "HspPoint",
    "HspState",
    "PointStreamBuffer",
    "ServerSentEvent",
    "StrokeSettings",
    "iter_sse",
    "parse_play_state",
]
