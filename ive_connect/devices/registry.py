"""Device Registry

Keeps track of every device session, routes preference updates to the session
owning a device and merges all session events into one hub.
"""

import asyncio
import logging
from typing import Callable, Iterator, Optional

from ive_connect.commands.types import DevicePreference
from ive_connect.devices.session import DeviceSession
from ive_connect.events.channel import EventHub
from ive_connect.events.models import (
    DeviceAddedEvent,
    DeviceRemovedEvent,
    SessionEvent,
    SessionRegisteredEvent,
    SessionUnregisteredEvent,
)

logger = logging.getLogger(__name__)

DeviceAddedCallback = Callable[[DeviceAddedEvent], None]
DeviceRemovedCallback = Callable[[DeviceRemovedEvent], None]


class DeviceRegistry:
    """Registry of device sessions.

    Registering a session attaches its event channel to the hub; this needs a
    running event loop.
    """

    def __init__(self, hub: Optional[EventHub] = None):
        self._hub = hub or EventHub()
        self._sessions: dict[str, DeviceSession] = {}
        self._device_added_hooks: list[DeviceAddedCallback] = []
        self._device_removed_hooks: list[DeviceRemovedCallback] = []
        self._hub.add_callback(self._route_device_events)

    @property
    def hub(self) -> EventHub:
        return self._hub

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[DeviceSession]:
        return iter(list(self._sessions.values()))

    def sessions(self) -> list[DeviceSession]:
        return list(self._sessions.values())

    def get(self, session_id: str) -> Optional[DeviceSession]:
        return self._sessions.get(session_id)

    def connected_sessions(self) -> list[DeviceSession]:
        return [s for s in self._sessions.values() if s.is_connected]

    def register(self, session: DeviceSession) -> None:
        """Add a session and start forwarding its events.

        Raises:
            ValueError: If a session with the same id is already registered.
        """
        if session.session_id in self._sessions:
            raise ValueError(f"Session {session.session_id} is already registered")
        self._sessions[session.session_id] = session
        self._hub.attach(session.session_id, session.events)
        logger.info(f"Registered {session.kind} session {session.session_id}")
        self._hub.publish(SessionRegisteredEvent(session_id=session.session_id, kind=session.kind))

    async def unregister(self, session_id: str) -> None:
        """Disconnect and remove a session. Unknown ids are ignored."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        await session.disconnect()
        self._hub.detach(session_id)
        logger.info(f"Unregistered session {session_id}")
        self._hub.publish(SessionUnregisteredEvent(session_id=session_id))

    async def connect_all(self) -> dict[str, Optional[Exception]]:
        """Connect every session concurrently.

        Returns:
            The connection error per session id, None for sessions that connected.
        """
        sessions = self.sessions()
        results = await asyncio.gather(*(s.connect() for s in sessions), return_exceptions=True)
        outcome: dict[str, Optional[Exception]] = {}
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to connect {session.session_id}: {result}")
                outcome[session.session_id] = result
            elif isinstance(result, BaseException):
                raise result
            else:
                outcome[session.session_id] = None
        return outcome

    async def disconnect_all(self) -> None:
        await asyncio.gather(*(s.disconnect() for s in self.sessions()))

    def find_device(self, device_id: str) -> list[DeviceSession]:
        """Return every session that knows a device with this id."""
        return [s for s in self._sessions.values() if s.owns_device(device_id)]

    def register_preference(
        self, device_id: str, preference: DevicePreference, session_id: Optional[str] = None
    ) -> None:
        """Set the preference of a device on the session that owns it.

        Raises:
            ValueError: If the device is unknown, or ambiguous without ``session_id``.
        """
        if session_id is not None:
            session = self._sessions.get(session_id)
            if session is None:
                raise ValueError(f"Unknown session {session_id}")
            session.set_preference(device_id, preference)
            return

        owners = self.find_device(device_id)
        if not owners:
            raise ValueError(f"Unknown device {device_id}")
        if len(owners) > 1:
            raise ValueError(f"Device id {device_id} exists in several sessions, pass session_id")
        owners[0].set_preference(device_id, preference)

    def on_device_added(self, callback: DeviceAddedCallback) -> None:
        self._device_added_hooks.append(callback)

    def on_device_removed(self, callback: DeviceRemovedCallback) -> None:
        self._device_removed_hooks.append(callback)

    def _route_device_events(self, event: SessionEvent) -> None:
        if isinstance(event, DeviceAddedEvent):
            hooks: list = self._device_added_hooks
        elif isinstance(event, DeviceRemovedEvent):
            hooks = self._device_removed_hooks
        else:
            return
        for hook in list(hooks):
            try:
                hook(event)
            except Exception as e:
                logger.error(f"Error in device hook: {e}")

    async def close(self) -> None:
        """Disconnect every session and stop event forwarding."""
        await self.disconnect_all()
        await self._hub.close()
