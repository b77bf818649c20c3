"""Event definitions and state enums.

This module has no dependencies inside the package so every other module can
import it without circular imports.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

# session_id used by events that concern every session at once
GLOBAL_SESSION_ID = "global"


class ConnectionState(Enum):
    """Connection state of a device session"""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class SchedulerState(Enum):
    """State of the playback scheduler"""

    IDLE = "idle"
    PLAYING = "playing"
    STOPPED = "stopped"


class PlayState(Enum):
    """Playback state reported by a self-clocked device"""

    NOT_INITIALIZED = "not_initialized"
    PLAYING = "playing"
    STOPPED = "stopped"
    PAUSED = "paused"
    STARVING = "starving"


class SessionEvent(BaseModel):
    """Base class for all events"""

    event_type: str
    session_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ConnectionStateChangedEvent(SessionEvent):
    event_type: str = "connection_state_changed"
    old_state: ConnectionState
    new_state: ConnectionState


class DeviceAddedEvent(SessionEvent):
    event_type: str = "device_added"
    device_id: str
    name: str
    capabilities: dict[str, Any]


class DeviceRemovedEvent(SessionEvent):
    event_type: str = "device_removed"
    device_id: str


class DevicePreferenceChangedEvent(SessionEvent):
    event_type: str = "device_preference_changed"
    device_id: str
    preference: dict[str, Any]


class ScanningChangedEvent(SessionEvent):
    event_type: str = "scanning_changed"
    scanning: bool


class PlaybackStateChangedEvent(SessionEvent):
    """A session started or stopped playing"""

    event_type: str = "playback_state_changed"
    is_playing: bool
    time_ms: Optional[float] = None
    playback_rate: float = 1.0
    loop: bool = False


class DevicePlayStateEvent(SessionEvent):
    """Play state reported by the device itself"""

    event_type: str = "device_play_state"
    play_state: PlayState


class SchedulerStateChangedEvent(SessionEvent):
    event_type: str = "scheduler_state_changed"
    session_id: str = GLOBAL_SESSION_ID
    old_state: SchedulerState
    new_state: SchedulerState


class PlaybackLoopedEvent(SessionEvent):
    event_type: str = "playback_looped"
    session_id: str = GLOBAL_SESSION_ID
    iteration: int


class ScriptLoadedEvent(SessionEvent):
    event_type: str = "script_loaded"
    session_id: str = GLOBAL_SESSION_ID
    action_count: int
    duration_ms: int
    loaded_from: Optional[str] = None


class SessionErrorEvent(SessionEvent):
    """Something went wrong in a session that the user should know about"""

    event_type: str = "session_error"
    message: str
    error_type: Optional[str] = None


class CommandDispatchErrorEvent(SessionEvent):
    """One command failed on one device, playback continues"""

    event_type: str = "command_dispatch_error"
    device_id: Optional[str] = None
    command: Optional[str] = None
    message: str


class SessionRegisteredEvent(SessionEvent):
    event_type: str = "session_registered"
    kind: str


class SessionUnregisteredEvent(SessionEvent):
    event_type: str = "session_unregistered"


EventCallback = Callable[[SessionEvent], None]
