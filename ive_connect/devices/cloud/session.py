"""Session for a single cloud-connected, self-clocked device.

The device plays a point buffer against the server clock on its own. The session
uploads the timeline in chunks ahead of playback, starts the device with the
estimated server time and keeps it in sync; scheduler ticks only top up the buffer.
"""

import asyncio
import logging
from typing import Any, Optional

from pydantic import ValidationError

from ive_connect.clock.synchronizer import ClockSynchronizer
from ive_connect.commands.translator import to_device_position
from ive_connect.commands.types import DeviceCapabilitySet, DevicePreference
from ive_connect.config import CloudConfig
from ive_connect.devices.cloud.api import CloudApi
from ive_connect.devices.cloud.sse import ServerSentEvent, iter_sse
from ive_connect.devices.cloud.stream_buffer import PointStreamBuffer
from ive_connect.devices.cloud.types import (
    CloudDeviceInfo,
    HspPoint,
    StrokeSettings,
    parse_play_state,
)
from ive_connect.devices.session import DeviceSession
from ive_connect.events.models import ConnectionState, DevicePlayStateEvent, PlayState
from ive_connect.exceptions import (
    ClockSyncError,
    DeviceConnectionError,
    HapticError,
    ProtocolError,
)
from ive_connect.timeline.timeline import Timeline, TimelineIndex, TimelineStep

logger = logging.getLogger(__name__)

MIN_CONNECTION_KEY_LENGTH = 5

CLOUD_CAPABILITIES = DeviceCapabilitySet(can_linear=True, step_resolution={"Position": 100})


class CloudSession(DeviceSession):
    """Drives one device through the cloud REST API and its event stream.

    Args:
        config: Connection key, API URL and buffer settings.
        clock: Shared clock synchronizer, the session probes the server clock with it.
        session_id: Identifier of the session, defaults to ``cloud:<connection key>``.
        api: Pre-built API client, mainly for tests.
    """

    kind = "cloud"

    def __init__(
        self,
        config: CloudConfig,
        clock: Optional[ClockSynchronizer] = None,
        session_id: Optional[str] = None,
        api: Optional[CloudApi] = None,
    ):
        self._config = config
        self._api = api or CloudApi(config)
        super().__init__(session_id or self._api.name)
        self._clock = clock or ClockSynchronizer()
        self._sse_task: asyncio.Task | None = None
        self._refill_task: asyncio.Task | None = None
        self._buffer: PointStreamBuffer | None = None
        self._timeline: Timeline | None = None
        self._playback_rate = 1.0
        self._loop = False
        self._device_loops = False
        self._play_state = PlayState.NOT_INITIALIZED
        self.device_info: CloudDeviceInfo | None = None
        self.stroke: StrokeSettings | None = None
        self.offset_ms: int = 0

    @property
    def api(self) -> CloudApi:
        return self._api

    @property
    def clock(self) -> ClockSynchronizer:
        return self._clock

    @property
    def device_id(self) -> str:
        return self._config.connection_key

    @property
    def play_state(self) -> PlayState:
        return self._play_state

    @property
    def buffer(self) -> PointStreamBuffer | None:
        return self._buffer

    # connection

    async def _connect(self) -> None:
        if len(self._config.connection_key) < MIN_CONNECTION_KEY_LENGTH:
            raise DeviceConnectionError(
                f"Connection key must be at least {MIN_CONNECTION_KEY_LENGTH} characters",
                session_id=self.session_id,
            )

        try:
            await self._clock.probe(self._api)
        except ClockSyncError as e:
            logger.warning(f"{e}, continuing without offset")
            self._publish_error(str(e), e)

        await self._cancel_tasks()
        self._sse_task = asyncio.create_task(self._listen(), name=f"sse-{self.session_id}")

        try:
            connected = await self._api.is_connected()
        except ProtocolError as e:
            raise DeviceConnectionError(
                f"Liveness check failed: {e.message}", session_id=self.session_id
            ) from e
        if not connected:
            raise DeviceConnectionError("Device is not online", session_id=self.session_id)

        await self._load_device_settings()
        name = (self.device_info.hw_model_name if self.device_info else None) or "Cloud device"
        self._add_device(self.device_id, name, CLOUD_CAPABILITIES)

        interval = self._clock.config.resync_interval_s
        if interval > 0:
            self._clock.start_periodic(self._api, interval)

    async def _load_device_settings(self) -> None:
        try:
            self.device_info = await self._api.get_info()
            self.offset_ms = await self._api.get_offset()
            self.stroke = await self._api.get_stroke()
        except ProtocolError as e:
            logger.warning(f"Could not load settings of {self.session_id}: {e}")

    async def _cancel_tasks(self) -> None:
        self._clock.cancel(self._api.name)
        for task in (self._refill_task, self._sse_task):
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._refill_task, self._sse_task) if t is not None),
            return_exceptions=True,
        )
        self._refill_task = None
        self._sse_task = None

    async def _disconnect(self) -> None:
        await self._cancel_tasks()
        self._buffer = None
        await self._api.aclose()

    async def _listen(self) -> None:
        try:
            async for event in iter_sse(self._api.client, self._api.sse_url, self._api.sse_params):
                try:
                    self._handle_event(event)
                except (ValidationError, ProtocolError) as e:
                    logger.warning(f"Invalid {event.event} event from {self.session_id}: {e}")
                    self._publish_error(f"Invalid {event.event} event", e)
                if self.connection_state == ConnectionState.DISCONNECTED:
                    return
        except DeviceConnectionError as e:
            self._on_stream_failure(str(e))
            return
        logger.info(f"Event stream of {self.session_id} closed by the server")

    def _on_stream_failure(self, reason: str) -> None:
        if self.is_connected:
            self._on_transport_lost(reason)
        else:
            logger.warning(f"Event stream of {self.session_id} failed: {reason}")

    def _on_transport_lost(self, reason: str) -> None:
        if self.connection_state == ConnectionState.DISCONNECTED:
            return
        super()._on_transport_lost(reason)
        self._clock.cancel(self._api.name)
        current = asyncio.current_task()
        for task in (self._refill_task, self._sse_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._buffer = None

    def _handle_event(self, event: ServerSentEvent) -> None:
        payload = event.json()
        data: dict[str, Any] = {}
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            data = payload["data"]

        if event.event == "device_status":
            if isinstance(data.get("info"), dict):
                self.device_info = CloudDeviceInfo.model_validate(data["info"])
            if data.get("connected") is False:
                self._on_transport_lost("Device went offline")
        elif event.event == "device_connected":
            logger.info(f"Device {self.device_id} is online")
        elif event.event == "device_disconnected":
            self._on_transport_lost("Device disconnected")
        elif event.event == "mode_changed":
            # the device leaves the streaming mode and stops on its own
            if self._is_playing:
                self._set_playing(False)
        elif event.event == "hsp_state_changed":
            state = data.get("data") if isinstance(data.get("data"), dict) else {}
            self._update_play_state(parse_play_state(state.get("play_state")))
        else:
            logger.debug(f"Ignoring event {event.event}")

    def _update_play_state(self, play_state: PlayState) -> None:
        if play_state == self._play_state:
            return
        self._play_state = play_state
        self._events.publish(
            DevicePlayStateEvent(session_id=self.session_id, play_state=play_state)
        )
        if play_state == PlayState.STARVING and self._buffer is not None:
            self._schedule_refill()

    # playback

    def _build_points(self, timeline: Timeline, preference: DevicePreference) -> list[HspPoint]:
        return [
            HspPoint(t=action.at, x=to_device_position(action.pos, preference))
            for action in timeline.actions
        ]

    async def _upload_next(self, flush: bool = False) -> None:
        if self._buffer is None:
            return
        chunk = self._buffer.next_chunk()
        if chunk is None:
            return
        points, tail_index = chunk
        await self._api.hsp_add(
            points,
            tail_point_stream_index=tail_index,
            flush=flush,
            tail_point_threshold=self._config.starving_threshold,
        )
        logger.debug(f"Uploaded {len(points)} points to {self.session_id}, tail {tail_index}")

    async def _start_playback(
        self, timeline: Timeline, time_ms: float, playback_rate: float, loop: bool
    ) -> None:
        preference = self.get_preference(self.device_id) or DevicePreference()
        self._timeline = timeline
        self._playback_rate = playback_rate
        self._loop = loop
        buffer = self._buffer = PointStreamBuffer(
            self._build_points(timeline, preference),
            chunk_size=self._config.chunk_size,
            threshold=self._config.starving_threshold,
        )
        start_index = TimelineIndex(timeline).lookup(time_ms).index
        await self._start_stream(buffer, max(0, start_index - 1), time_ms)

    async def _start_stream(
        self, buffer: PointStreamBuffer, from_index: int, time_ms: float
    ) -> None:
        buffer.seek(from_index)
        await self._api.hsp_setup()
        await self._upload_next(flush=True)
        # the device can only loop on its own when it holds the whole timeline
        self._device_loops = self._loop and from_index == 0 and buffer.exhausted
        state = await self._api.hsp_play(
            start_time=time_ms,
            server_time=self._clock.estimate_remote_now(self._api.name),
            playback_rate=self._playback_rate,
            pause_on_starving=True,
            loop=self._device_loops,
        )
        self._update_play_state(state.play_state)

    async def _dispatch(self, step: TimelineStep) -> None:
        if self._buffer is not None and self._buffer.needs_refill(step.index):
            await self._upload_next()

    def _schedule_refill(self) -> None:
        if self._refill_task is not None and not self._refill_task.done():
            return
        self._refill_task = asyncio.create_task(self._refill())

    async def _refill(self) -> None:
        async with self._dispatch_lock:
            try:
                if self._buffer is not None and not self._buffer.exhausted:
                    await self._upload_next()
            except HapticError as e:
                logger.warning(f"Refill of {self.session_id} failed: {e}")
                self._publish_error("Failed to refill the point buffer", e)

    async def on_loop(self) -> None:
        buffer = self._buffer
        if buffer is None or self._device_loops:
            return
        async with self._dispatch_lock:
            await self._start_stream(buffer, 0, 0)

    async def _stop_playback(self) -> None:
        if not self.is_connected:
            return
        state = await self._api.hsp_stop()
        self._update_play_state(state.play_state)

    async def sync_time(self, time_ms: float, filter: Optional[float] = None) -> bool:
        if not self.is_connected or not self._is_playing:
            return False
        await self._api.hsp_sync_time(
            current_time=time_ms,
            server_time=self._clock.estimate_remote_now(self._api.name),
            filter=self._config.sync_filter if filter is None else filter,
        )
        return True

    async def pause(self) -> PlayState:
        """Hold the device at its current point. Uploaded points are kept."""
        state = await self._api.hsp_pause()
        self._update_play_state(state.play_state)
        return self._play_state

    async def resume(self, pick_up: bool = False) -> PlayState:
        """Continue a paused stream.

        Args:
            pick_up: Jump to where the server clock is now instead of the paused point.
        """
        state = await self._api.hsp_resume(pick_up=pick_up)
        self._update_play_state(state.play_state)
        return self._play_state

    async def refresh_play_state(self) -> PlayState:
        """Query the device-side buffer and update ``play_state`` from it."""
        state = await self._api.hsp_state()
        self._update_play_state(state.play_state)
        return self._play_state

    async def set_stroke(self, stroke: StrokeSettings) -> StrokeSettings:
        self.stroke = await self._api.set_stroke(stroke)
        return self.stroke

    async def set_offset(self, offset_ms: int) -> None:
        await self._api.set_offset(offset_ms)
        self.offset_ms = offset_ms
