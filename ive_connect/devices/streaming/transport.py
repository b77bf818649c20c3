"""
WebSocket transport for the local streaming protocol.
"""

import asyncio
import itertools
import logging
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ive_connect.devices.streaming.messages import (
    PROTOCOL_VERSION_MAJOR,
    PROTOCOL_VERSION_MINOR,
    Message,
    decode_messages,
    encode_message,
)
from ive_connect.exceptions import DeviceConnectionError, ProtocolError

logger = logging.getLogger(__name__)

PushHandler = Callable[[Message], None]
CloseHandler = Callable[[str], None]
Connector = Callable[[str], Awaitable[Any]]


async def _default_connector(url: str) -> Any:
    return await websockets.connect(url)


class StreamingTransport:
    """Request/reply correlation over one WebSocket connection.

    Every request gets a fresh id and a future in the pending map. A reply with that
    id resolves the future (or fails it for an ``Error`` reply). Frames that match no
    pending request are handed to ``on_push``. When the socket closes, every pending
    request fails with :class:`DeviceConnectionError`.

    Args:
        on_push: Called for every unsolicited message.
        on_close: Called once when the connection drops without :meth:`close`.
        request_timeout_s: Timeout of a single request.
        connector: Opens the socket, injectable for tests.
    """

    def __init__(
        self,
        on_push: PushHandler,
        on_close: Optional[CloseHandler] = None,
        request_timeout_s: float = 10.0,
        connector: Optional[Connector] = None,
    ):
        self._on_push = on_push
        self._on_close = on_close
        self._request_timeout_s = request_timeout_s
        self._connector = connector or _default_connector
        self._ws: Any = None
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._reader_task: asyncio.Task | None = None
        self._ping_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self._closing = False
        self.server_info: dict[str, Any] = {}

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def open(self, url: str, client_name: str) -> dict[str, Any]:
        """Connect and run the handshake.

        Returns:
            The ``ServerInfo`` payload.

        Raises:
            DeviceConnectionError: If the socket cannot be opened or the handshake fails.
        """
        async with self._lock:
            if self._ws is not None:
                return self.server_info
            try:
                self._ws = await self._connector(url)
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                raise DeviceConnectionError(f"Could not connect to {url}: {e}") from e
            self._closing = False
            self._reader_task = asyncio.create_task(self._read_loop(), name="streaming-reader")

        try:
            reply = await self.request(
                "RequestServerInfo",
                {
                    "ClientName": client_name,
                    "ProtocolVersionMajor": PROTOCOL_VERSION_MAJOR,
                    "ProtocolVersionMinor": PROTOCOL_VERSION_MINOR,
                },
            )
        except ProtocolError as e:
            await self.close()
            raise DeviceConnectionError(f"Handshake with {url} rejected: {e.message}") from e
        except DeviceConnectionError:
            await self.close()
            raise

        self.server_info = reply.payload
        max_ping_time = int(reply.payload.get("MaxPingTime") or 0)
        if max_ping_time > 0:
            self._ping_task = asyncio.create_task(
                self._ping_loop(max_ping_time / 2 / 1000), name="streaming-ping"
            )
        logger.info(f"Connected to {reply.payload.get('ServerName', url)}")
        return self.server_info

    async def request(self, message_type: str, payload: Optional[dict[str, Any]] = None) -> Message:
        """Send a request and wait for its reply.

        Raises:
            DeviceConnectionError: If not connected or the connection drops meanwhile.
            ProtocolError: If the server answers with an error or does not answer in time.
        """
        if self._ws is None:
            raise DeviceConnectionError("Not connected")

        message_id = next(self._ids)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[message_id] = future
        try:
            await self._ws.send(encode_message(message_type, message_id, payload))
        except (ConnectionClosed, OSError) as e:
            self._pending.pop(message_id, None)
            raise DeviceConnectionError(f"Failed to send {message_type}: {e}") from e

        try:
            return await asyncio.wait_for(future, timeout=self._request_timeout_s)
        except asyncio.TimeoutError as e:
            raise ProtocolError(f"{message_type} timed out") from e
        finally:
            self._pending.pop(message_id, None)

    def _handle_frame(self, raw: str | bytes) -> None:
        try:
            messages = decode_messages(raw)
        except ProtocolError as e:
            logger.warning(f"Ignoring malformed frame: {e}")
            return

        for message in messages:
            future = self._pending.get(message.id) if message.id else None
            if future is None:
                self._dispatch_push(message)
                continue
            if future.done():
                continue
            if message.type == "Error":
                future.set_exception(
                    ProtocolError(
                        message.payload.get("ErrorMessage", "Unknown error"),
                        code=message.payload.get("ErrorCode"),
                    )
                )
            else:
                future.set_result(message)

    def _dispatch_push(self, message: Message) -> None:
        try:
            self._on_push(message)
        except Exception as e:
            logger.error(f"Error handling {message.type}: {e}")

    async def _read_loop(self) -> None:
        reason = "Connection closed"
        try:
            async for raw in self._ws:
                self._handle_frame(raw)
        except ConnectionClosed as e:
            reason = f"Connection closed: {e}"
        finally:
            self._fail_pending(DeviceConnectionError("Connection closed"))
            if not self._closing:
                self._ws = None
                self._cancel_ping()
                if self._on_close is not None:
                    self._on_close(reason)

    async def _ping_loop(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                await self.request("Ping")
            except (ProtocolError, DeviceConnectionError) as e:
                logger.warning(f"Ping failed: {e}")

    def _cancel_ping(self) -> None:
        if self._ping_task is not None:
            self._ping_task.cancel()
            self._ping_task = None

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def close(self) -> None:
        """Close the socket and fail every pending request. Safe to call multiple times."""
        async with self._lock:
            self._closing = True
            self._cancel_ping()
            ws, self._ws = self._ws, None
            if ws is not None:
                try:
                    await ws.close()
                except (ConnectionClosed, OSError) as e:
                    logger.debug(f"Error while closing socket: {e}")
            if self._reader_task is not None:
                self._reader_task.cancel()
                try:
                    await self._reader_task
                except asyncio.CancelledError:
                    pass
                self._reader_task = None
            self._fail_pending(DeviceConnectionError("Connection closed"))
            logger.debug("Streaming transport closed")
