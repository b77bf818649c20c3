from typing import Any


class HapticError(Exception):
    """Base class of all errors raised by ive_connect."""


class DeviceConnectionError(HapticError):
    """Raised when a handshake fails or a transport drops.

    The affected session is DISCONNECTED afterwards.
    """

    def __init__(self, message: str, session_id: str | None = None):
        self._message = message
        self._session_id = session_id
        prefix = f"[{session_id}] " if session_id else ""
        super().__init__(f"{prefix}{message}")

    @property
    def message(self) -> str:
        """Return the error message."""
        return self._message

    @property
    def session_id(self) -> str | None:
        """Return the id of the session that lost its connection."""
        return self._session_id


class ProtocolError(HapticError):
    """Raised when a wire message is malformed or rejected by the remote side."""

    def __init__(self, message: str, code: int | str | None = None, data: Any = None):
        self._message = message
        self._code = code
        self._data = data
        suffix = f" (code {code})" if code is not None else ""
        super().__init__(f"Protocol error: {message}{suffix}")

    @property
    def message(self) -> str:
        """Return the error message reported by the remote side."""
        return self._message

    @property
    def code(self) -> int | str | None:
        """Return the remote error code, if any."""
        return self._code

    @property
    def data(self) -> Any:
        """Return additional error data sent by the remote side."""
        return self._data


class TimelineError(HapticError):
    """Raised for empty or malformed scripts, always before any tick runs."""


class CommandDispatchError(HapticError):
    """A single primitive command failed on a single device.

    Non-fatal: playback continues with the other devices.
    """

    def __init__(self, device_id: str, command: Any, reason: str):
        self._device_id = device_id
        self._command = command
        self._reason = reason
        super().__init__(f"Command {command!r} failed on device {device_id}: {reason}")

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def command(self) -> Any:
        return self._command

    @property
    def reason(self) -> str:
        return self._reason


class ClockSyncError(HapticError):
    """Raised when no clock offset could ever be established for an endpoint."""

    def __init__(self, endpoint: str):
        self._endpoint = endpoint
        super().__init__(f"Could not establish a clock offset for {endpoint}")

    @property
    def endpoint(self) -> str:
        return self._endpoint


class PlaybackControlError(HapticError):
    """Raised when playback cannot be started or controlled."""
