from ive_connect.clock import ClockSynchronizer
from ive_connect.commands import CommandTranslator, DeviceCapabilitySet, DevicePreference, translate
from ive_connect.config import CloudConfig, ClockSyncConfig, PlaybackConfig, StreamingConfig
from ive_connect.devices import ConnectionState, DeviceRegistry, DeviceSession
from ive_connect.devices.cloud import CloudSession
from ive_connect.devices.streaming import StreamingSession
from ive_connect.events import EventChannel, EventHub, PlayState, SchedulerState
from ive_connect.exceptions import (
    ClockSyncError,
    CommandDispatchError,
    DeviceConnectionError,
    HapticError,
    PlaybackControlError,
    ProtocolError,
    TimelineError,
)
from ive_connect.logging import logger
from ive_connect.playback import PlaybackScheduler
from ive_connect.timeline import Action, ScriptData, Timeline, TimelineIndex, load_script
from ive_connect.version import version

__version__ = version

__all__ = [
    "Action",
    "ClockSyncConfig",
    "ClockSyncError",
    "ClockSynchronizer",
    "CloudConfig",
    "CloudSession",
    "CommandDispatchError",
    "CommandTranslator",
    "ConnectionState",
    "DeviceCapabilitySet",
    "DeviceConnectionError",
    "DevicePreference",
    "DeviceRegistry",
    "DeviceSession",
    "EventChannel",
    "EventHub",
    "HapticError",
    "PlayState",
    "PlaybackConfig",
    "PlaybackControlError",
    "PlaybackScheduler",
    "ProtocolError",
    "SchedulerState",
    "ScriptData",
    "StreamingConfig",
    "StreamingSession",
    "Timeline",
    "TimelineError",
    "TimelineIndex",
    "load_script",
    "logger",
    "translate",
    "__version__",
]
