from ive_connect.events.channel import CHANNEL_CLOSED, EventChannel, EventHub
from ive_connect.events.models import (
    GLOBAL_SESSION_ID,
    CommandDispatchErrorEvent,
    ConnectionState,
    ConnectionStateChangedEvent,
    DeviceAddedEvent,
    DevicePlayStateEvent,
    DevicePreferenceChangedEvent,
    DeviceRemovedEvent,
    EventCallback,
    PlaybackLoopedEvent,
    PlaybackStateChangedEvent,
    PlayState,
    ScanningChangedEvent,
    SchedulerState,
    SchedulerStateChangedEvent,
    ScriptLoadedEvent,
    SessionErrorEvent,
    SessionEvent,
    SessionRegisteredEvent,
    SessionUnregisteredEvent,
)

__all__ = [
    "CHANNEL_CLOSED",
    "GLOBAL_SESSION_ID",
    "CommandDispatchErrorEvent",
    "ConnectionState",
    "ConnectionStateChangedEvent",
    "DeviceAddedEvent",
    "DevicePlayStateEvent",
    "DevicePreferenceChangedEvent",
    "DeviceRemovedEvent",
    "EventCallback",
    "EventChannel",
    "EventHub",
    "PlayState",
    "PlaybackLoopedEvent",
    "PlaybackStateChangedEvent",
    "ScanningChangedEvent",
    "SchedulerState",
    "SchedulerStateChangedEvent",
    "ScriptLoadedEvent",
    "SessionErrorEvent",
    "SessionEvent",
    "SessionRegisteredEvent",
    "SessionUnregisteredEvent",
]
