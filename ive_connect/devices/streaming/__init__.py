from ive_connect.devices.streaming.messages import (
    DeviceFeature,
    Message,
    StreamingDevice,
    decode_messages,
    encode_message,
)
from ive_connect.devices.streaming.session import StreamingSession
from ive_connect.devices.streaming.transport import StreamingTransport

__all__ = [
    "DeviceFeature",
    "Message",
    "StreamingDevice",
    "StreamingSession",
    "StreamingTransport",
    "decode_messages",
    "encode_message",
]
