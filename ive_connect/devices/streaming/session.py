"""Session for a local streaming server that manages many actuators."""

import asyncio
import logging
import random
from typing import Any, Optional

from ive_connect.commands.translator import CommandTranslator
from ive_connect.commands.types import PrimitiveCommand
from ive_connect.config import StreamingConfig
from ive_connect.devices.session import DeviceSession
from ive_connect.devices.streaming.messages import (
    Message,
    StreamingDevice,
    output_commands,
    parse_device,
    parse_device_list,
)
from ive_connect.devices.streaming.transport import Connector, StreamingTransport
from ive_connect.events.models import CommandDispatchErrorEvent, ScanningChangedEvent
from ive_connect.exceptions import (
    CommandDispatchError,
    DeviceConnectionError,
    HapticError,
    ProtocolError,
)
from ive_connect.timeline.timeline import TimelineStep

logger = logging.getLogger(__name__)


def generate_client_name(prefix: str) -> str:
    return f"{prefix}-{random.randint(0, 9999)}"


class StreamingSession(DeviceSession):
    """Drives every device attached to one streaming server.

    One timeline step is translated per device and the resulting commands are sent
    to all devices concurrently. A failing command only affects its device.

    Args:
        config: Server URL and client settings.
        session_id: Identifier of the session, defaults to the server URL.
        translator: Translates steps into primitives.
        transport: Pre-built transport.
        connector: Opens the WebSocket of the default transport, injectable for tests.
    """

    kind = "streaming"

    def __init__(
        self,
        config: Optional[StreamingConfig] = None,
        session_id: Optional[str] = None,
        translator: Optional[CommandTranslator] = None,
        transport: Optional[StreamingTransport] = None,
        connector: Optional[Connector] = None,
    ):
        self._config = config or StreamingConfig()
        super().__init__(session_id or self._config.url)
        self._translator = translator or CommandTranslator()
        self._transport = transport or StreamingTransport(
            on_push=self._handle_push,
            on_close=self._on_transport_lost,
            request_timeout_s=self._config.request_timeout_s,
            connector=connector,
        )
        self._devices: dict[str, StreamingDevice] = {}
        self._is_scanning = False

    @property
    def transport(self) -> StreamingTransport:
        return self._transport

    @property
    def is_scanning(self) -> bool:
        return self._is_scanning

    def get_device(self, device_id: str) -> Optional[StreamingDevice]:
        return self._devices.get(device_id)

    async def _connect(self) -> None:
        await self._transport.open(self._config.url, generate_client_name(self._config.client_name))
        reply = await self._request("RequestDeviceList")
        self._apply_device_list(reply.payload)
        if self._config.scan_on_connect:
            await self.start_scanning()

    async def _disconnect(self) -> None:
        self._is_scanning = False
        self._devices.clear()
        await self._transport.close()

    def _on_transport_lost(self, reason: str) -> None:
        self._is_scanning = False
        self._devices.clear()
        super()._on_transport_lost(reason)

    async def _request(
        self, message_type: str, payload: Optional[dict[str, Any]] = None
    ) -> Message:
        try:
            return await self._transport.request(message_type, payload)
        except DeviceConnectionError as e:
            raise DeviceConnectionError(e.message, session_id=self.session_id) from e

    # push messages

    def _handle_push(self, message: Message) -> None:
        if message.type == "DeviceAdded":
            self._track_device(parse_device(message.payload))
        elif message.type == "DeviceRemoved":
            index = message.payload.get("DeviceIndex")
            self._forget_device(str(index))
        elif message.type == "DeviceList":
            self._apply_device_list(message.payload)
        elif message.type == "ScanningFinished":
            self._set_scanning(False)
        else:
            logger.debug(f"Unhandled push message {message.type}")

    def _apply_device_list(self, payload: dict[str, Any]) -> None:
        devices = parse_device_list(payload)
        seen = {device.device_id for device in devices}
        for device_id in list(self._devices):
            if device_id not in seen:
                self._forget_device(device_id)
        for device in devices:
            if device.device_id not in self._devices:
                self._track_device(device)

    def _track_device(self, device: StreamingDevice) -> None:
        self._devices[device.device_id] = device
        self._add_device(device.device_id, device.display_name or device.name, device.capabilities)

    def _forget_device(self, device_id: str) -> None:
        self._devices.pop(device_id, None)
        self._remove_device(device_id)

    def _set_scanning(self, scanning: bool) -> None:
        if self._is_scanning == scanning:
            return
        self._is_scanning = scanning
        self._events.publish(ScanningChangedEvent(session_id=self.session_id, scanning=scanning))

    async def start_scanning(self) -> None:
        await self._request("StartScanning")
        self._set_scanning(True)

    async def stop_scanning(self) -> None:
        await self._request("StopScanning")
        self._set_scanning(False)

    # playback

    async def send_command(self, device_id: str, command: PrimitiveCommand) -> None:
        """Send one primitive to one device.

        Raises:
            CommandDispatchError: If the device is unknown or rejects the command.
        """
        device = self._devices.get(device_id)
        if device is None:
            raise CommandDispatchError(device_id, command, "unknown device")
        for payload in output_commands(device, command):
            try:
                await self._request("OutputCmd", payload)
            except HapticError as e:
                raise CommandDispatchError(device_id, command, str(e)) from e

    async def _dispatch(self, step: TimelineStep) -> None:
        preferences = self.preference_snapshot()
        sends = []
        for device_id, device in list(self._devices.items()):
            preference = preferences.get(device_id)
            if preference is None or not preference.enabled:
                continue
            commands = self._translator.translate(
                step.position,
                step.previous_position,
                step.travel_duration_ms,
                device.capabilities,
                preference,
            )
            for command in commands:
                sends.append(self.send_command(device_id, command))

        results = await asyncio.gather(*sends, return_exceptions=True)
        for result in results:
            if isinstance(result, CommandDispatchError):
                logger.warning(str(result))
                self._events.publish(
                    CommandDispatchErrorEvent(
                        session_id=self.session_id,
                        device_id=result.device_id,
                        command=repr(result.command),
                        message=result.reason,
                    )
                )
            elif isinstance(result, BaseException):
                raise result

    async def stop_device(self, device_id: str) -> None:
        await self._request(
            "StopCmd", {"DeviceIndex": int(device_id), "Inputs": True, "Outputs": True}
        )

    async def _stop_playback(self) -> None:
        if not self._transport.is_open:
            return
        device_ids = list(self._devices)
        results = await asyncio.gather(
            *(self.stop_device(device_id) for device_id in device_ids), return_exceptions=True
        )
        for device_id, result in zip(device_ids, results):
            if isinstance(result, (ProtocolError, DeviceConnectionError)):
                logger.warning(f"Failed to stop device {device_id}: {result}")
                self._publish_error(f"Failed to stop device {device_id}", result)
            elif isinstance(result, BaseException):
                raise result
