"""Transport-independent device session contract.

A session owns one connection (a local streaming server or one cloud device) and
every actuator reachable through it. The scheduler only talks to this interface.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from ive_connect.commands.types import DeviceCapabilitySet, DevicePreference
from ive_connect.events.channel import EventChannel
from ive_connect.events.models import (
    ConnectionState,
    ConnectionStateChangedEvent,
    DeviceAddedEvent,
    DevicePreferenceChangedEvent,
    DeviceRemovedEvent,
    PlaybackStateChangedEvent,
    SessionErrorEvent,
)
from ive_connect.timeline.timeline import Timeline, TimelineStep

logger = logging.getLogger(__name__)


class DeviceSession(ABC):
    """Base class of all device sessions.

    Subclasses implement the transport hooks (``_connect``, ``_disconnect``,
    ``_dispatch``, ...). The public methods take care of connection state, event
    publishing and per-session ordering of dispatches.
    """

    kind: str = "device"

    def __init__(self, session_id: str):
        self._session_id = session_id
        self._connection_state = ConnectionState.DISCONNECTED
        self._events = EventChannel()
        self._dispatch_lock = asyncio.Lock()
        self._capabilities: dict[str, DeviceCapabilitySet] = {}
        self._device_names: dict[str, str] = {}
        self._preferences: dict[str, DevicePreference] = {}
        self._is_playing = False

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection_state

    @property
    def is_connected(self) -> bool:
        return self._connection_state == ConnectionState.CONNECTED

    @property
    def is_playing(self) -> bool:
        return self._is_playing

    @property
    def events(self) -> EventChannel:
        return self._events

    @property
    def devices(self) -> dict[str, DeviceCapabilitySet]:
        """Capabilities of every device currently known to the session."""
        return dict(self._capabilities)

    @property
    def device_names(self) -> dict[str, str]:
        return dict(self._device_names)

    @property
    def is_enabled(self) -> bool:
        """True if at least one device has an enabled preference."""
        return any(
            self._preferences.get(device_id, DevicePreference()).enabled
            for device_id in self._capabilities
        )

    def owns_device(self, device_id: str) -> bool:
        return device_id in self._capabilities

    def get_preference(self, device_id: str) -> Optional[DevicePreference]:
        return self._preferences.get(device_id)

    def set_preference(self, device_id: str, preference: DevicePreference) -> None:
        """Replace the preference of a device.

        Raises:
            ValueError: If the device is unknown to this session.
        """
        if device_id not in self._capabilities:
            raise ValueError(f"Unknown device {device_id} in session {self._session_id}")
        self._preferences[device_id] = preference
        self._events.publish(
            DevicePreferenceChangedEvent(
                session_id=self._session_id,
                device_id=device_id,
                preference=preference.model_dump(),
            )
        )

    def update_preference(self, device_id: str, **changes: Any) -> DevicePreference:
        """Validate and apply a partial preference update."""
        current = self._preferences.get(device_id, DevicePreference())
        updated = DevicePreference.model_validate({**current.model_dump(), **changes})
        self.set_preference(device_id, updated)
        return updated

    def preference_snapshot(self) -> dict[str, DevicePreference]:
        """Return the current preferences, read once per dispatch."""
        return dict(self._preferences)

    # state bookkeeping for subclasses

    def _set_connection_state(self, new_state: ConnectionState) -> None:
        old_state = self._connection_state
        if old_state == new_state:
            return
        self._connection_state = new_state
        logger.info(f"Session {self._session_id}: {old_state.value} -> {new_state.value}")
        self._events.publish(
            ConnectionStateChangedEvent(
                session_id=self._session_id, old_state=old_state, new_state=new_state
            )
        )

    def _add_device(self, device_id: str, name: str, capabilities: DeviceCapabilitySet) -> None:
        self._capabilities[device_id] = capabilities
        self._device_names[device_id] = name
        if device_id not in self._preferences:
            self._preferences[device_id] = DevicePreference.from_capabilities(capabilities)
        logger.info(f"Session {self._session_id}: device {device_id} ({name}) added")
        self._events.publish(
            DeviceAddedEvent(
                session_id=self._session_id,
                device_id=device_id,
                name=name,
                capabilities=capabilities.model_dump(),
            )
        )

    def _remove_device(self, device_id: str) -> None:
        if self._capabilities.pop(device_id, None) is None:
            return
        self._device_names.pop(device_id, None)
        logger.info(f"Session {self._session_id}: device {device_id} removed")
        self._events.publish(DeviceRemovedEvent(session_id=self._session_id, device_id=device_id))

    def _clear_devices(self) -> None:
        for device_id in list(self._capabilities):
            self._remove_device(device_id)

    def _set_playing(
        self,
        is_playing: bool,
        time_ms: Optional[float] = None,
        rate: float = 1.0,
        loop: bool = False,
    ) -> None:
        self._is_playing = is_playing
        self._events.publish(
            PlaybackStateChangedEvent(
                session_id=self._session_id,
                is_playing=is_playing,
                time_ms=time_ms,
                playback_rate=rate,
                loop=loop,
            )
        )

    def _publish_error(self, message: str, error: Optional[BaseException] = None) -> None:
        self._events.publish(
            SessionErrorEvent(
                session_id=self._session_id,
                message=message,
                error_type=type(error).__name__ if error is not None else None,
            )
        )

    # lifecycle

    async def connect(self) -> None:
        """Connect the transport and discover devices.

        Raises:
            DeviceConnectionError: If the handshake fails. The session is DISCONNECTED.
        """
        if self._connection_state != ConnectionState.DISCONNECTED:
            logger.debug(f"Session {self._session_id} already {self._connection_state.value}")
            return
        self._set_connection_state(ConnectionState.CONNECTING)
        try:
            await self._connect()
        except BaseException:
            await self._cleanup_after_failure()
            raise
        self._set_connection_state(ConnectionState.CONNECTED)

    async def _cleanup_after_failure(self) -> None:
        try:
            await self._disconnect()
        except Exception as e:
            logger.debug(f"Cleanup after failed connect of {self._session_id} failed: {e}")
        self._is_playing = False
        self._clear_devices()
        self._set_connection_state(ConnectionState.DISCONNECTED)

    async def disconnect(self) -> None:
        """Tear down the connection. Best effort, always ends DISCONNECTED."""
        if self._is_playing:
            try:
                await self.stop_playback()
            except Exception as e:
                logger.warning(f"Failed to stop playback on {self._session_id}: {e}")
        try:
            await self._disconnect()
        except Exception as e:
            logger.warning(f"Error while disconnecting {self._session_id}: {e}")
        self._clear_devices()
        self._set_connection_state(ConnectionState.DISCONNECTED)

    def _on_transport_lost(self, reason: str) -> None:
        """Called by subclasses when the transport dropped unexpectedly."""
        if self._connection_state == ConnectionState.DISCONNECTED:
            return
        logger.warning(f"Session {self._session_id} lost its transport: {reason}")
        self._is_playing = False
        self._clear_devices()
        self._set_connection_state(ConnectionState.DISCONNECTED)
        self._publish_error(f"Connection lost: {reason}")

    # playback contract

    async def start_playback(
        self, timeline: Timeline, time_ms: float, playback_rate: float = 1.0, loop: bool = False
    ) -> None:
        """Prepare the devices for a playback starting at ``time_ms``."""
        await self._start_playback(timeline, time_ms, playback_rate, loop)
        self._set_playing(True, time_ms, playback_rate, loop)

    async def dispatch(self, step: TimelineStep) -> None:
        """Send the commands for one timeline step.

        Dispatches of one session are serialised so commands leave in index order.
        """
        async with self._dispatch_lock:
            if not self.is_connected:
                return
            await self._dispatch(step)

    async def stop_playback(self) -> None:
        """Bring every device of the session to a safe stop."""
        try:
            await self._stop_playback()
        finally:
            if self._is_playing:
                self._set_playing(False)

    async def sync_time(self, time_ms: float, filter: Optional[float] = None) -> bool:
        """Correct device-side playback time. Returns False if unsupported."""
        return False

    async def on_loop(self) -> None:
        """Called when the scheduler restarts the timeline from the beginning."""

    async def __aenter__(self) -> "DeviceSession":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    # transport hooks

    @abstractmethod
    async def _connect(self) -> None: ...

    @abstractmethod
    async def _disconnect(self) -> None: ...

    @abstractmethod
    async def _dispatch(self, step: TimelineStep) -> None: ...

    @abstractmethod
    async def _stop_playback(self) -> None: ...

    async def _start_playback(
        self, timeline: Timeline, time_ms: float, playback_rate: float, loop: bool
    ) -> None:
        return None
