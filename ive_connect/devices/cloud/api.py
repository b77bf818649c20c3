"""
REST client for cloud-connected devices.
"""

import logging
from typing import Any, Optional, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from ive_connect.config import CloudConfig
from ive_connect.devices.cloud.types import (
    ApiEnvelope,
    CloudDeviceInfo,
    HspPoint,
    HspState,
    StrokeSettings,
)
from ive_connect.exceptions import DeviceConnectionError, ProtocolError

logger = logging.getLogger(__name__)

MAX_POINTS_PER_ADD = 100

ModelT = TypeVar("ModelT", bound=BaseModel)


class CloudApi:
    """Thin async wrapper around the device REST API.

    Every call returns the unwrapped ``result`` of the reply envelope. Network
    failures raise :class:`DeviceConnectionError`, error envelopes raise
    :class:`ProtocolError`.

    The instance doubles as a clock endpoint for the :class:`ClockSynchronizer`.

    Args:
        config: API URL, application id and connection key.
        transport: Optional httpx transport, e.g. ``httpx.MockTransport`` in tests.
    """

    def __init__(self, config: CloudConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        return f"cloud:{self._config.connection_key}"

    @property
    def headers(self) -> dict[str, str]:
        return {
            "X-Connection-Key": self._config.connection_key,
            "Authorization": f"Bearer {self._config.application_id}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._config.api_url,
                headers=self.headers,
                timeout=self._config.request_timeout_s,
                transport=self._transport,
            )
        return self._client

    @property
    def sse_url(self) -> str:
        return f"{self._config.api_url.rstrip('/')}/sse"

    @property
    def sse_params(self) -> dict[str, str]:
        return {"ck": self._config.connection_key, "apikey": self._config.application_id}

    async def aclose(self) -> None:
        """Close the underlying HTTP client. Safe to call multiple times."""
        if self._client is not None:
            client, self._client = self._client, None
            await client.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        try:
            response = await self.client.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            raise DeviceConnectionError(f"{method} {path} failed: {e}") from e
        try:
            body = response.json()
        except ValueError as e:
            raise ProtocolError(
                f"{method} {path} returned invalid JSON", code=response.status_code
            ) from e
        if not isinstance(body, dict):
            raise ProtocolError(f"{method} {path} returned {type(body).__name__}")
        logger.debug(f"{method} {path} -> {response.status_code}")
        return body

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        body = await self._send(method, path, json=json, params=params)
        return self._unwrap(body, f"{method} {path}")

    @staticmethod
    def _unwrap(body: dict[str, Any], what: str) -> Any:
        try:
            envelope = ApiEnvelope.model_validate(body)
        except ValidationError as e:
            raise ProtocolError(f"{what} returned a malformed envelope", data=body) from e
        return envelope.unwrap()

    @staticmethod
    def _parse(model: type[ModelT], data: Any, what: str) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ProtocolError(f"{what} returned an invalid {model.__name__}", data=data) from e

    async def _hsp(
        self, method: str, path: str, json: Optional[dict[str, Any]] = None
    ) -> HspState:
        result = await self.request(method, path, json=json)
        try:
            return HspState.from_result(result)
        except ValidationError as e:
            raise ProtocolError(f"{method} {path} returned an invalid state", data=result) from e

    # device

    async def get_server_time(self) -> float:
        body = await self._send("GET", "/servertime")
        if "server_time" in body:
            raw = body["server_time"]
        else:
            result = self._unwrap(body, "GET /servertime")
            if not isinstance(result, dict) or "server_time" not in result:
                raise ProtocolError("server time missing in reply")
            raw = result["server_time"]
        try:
            return float(raw)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"server time {raw!r} is not a number", data=body) from e

    async def fetch_remote_time(self) -> Optional[float]:
        return await self.get_server_time()

    async def is_connected(self) -> bool:
        result = await self.request("GET", "/connected")
        return bool(isinstance(result, dict) and result.get("connected"))

    async def get_info(self) -> CloudDeviceInfo:
        result = await self.request("GET", "/info")
        return self._parse(CloudDeviceInfo, result or {}, "GET /info")

    async def get_mode(self) -> Any:
        return await self.request("GET", "/mode")

    # streaming buffer

    async def hsp_setup(self, stream_id: Optional[int] = None) -> HspState:
        payload = {"stream_id": stream_id} if stream_id is not None else {}
        return await self._hsp("PUT", "/hsp/setup", json=payload)

    async def hsp_state(self) -> HspState:
        return await self._hsp("GET", "/hsp/state")

    async def hsp_add(
        self,
        points: list[HspPoint],
        tail_point_stream_index: int,
        flush: bool = False,
        tail_point_threshold: Optional[int] = None,
    ) -> HspState:
        if len(points) > MAX_POINTS_PER_ADD:
            raise ValueError(f"At most {MAX_POINTS_PER_ADD} points per upload")
        payload: dict[str, Any] = {
            "points": [point.model_dump() for point in points],
            "tail_point_stream_index": tail_point_stream_index,
            "flush": flush,
        }
        if tail_point_threshold is not None:
            payload["tail_point_threshold"] = tail_point_threshold
        return await self._hsp("PUT", "/hsp/add", json=payload)

    async def hsp_play(
        self,
        start_time: float,
        server_time: float,
        playback_rate: float = 1.0,
        pause_on_starving: bool = False,
        loop: bool = False,
    ) -> HspState:
        payload = {
            "start_time": round(start_time),
            "server_time": round(server_time),
            "playback_rate": playback_rate,
            "pause_on_starving": pause_on_starving,
            "loop": loop,
        }
        return await self._hsp("PUT", "/hsp/play", json=payload)

    async def hsp_stop(self) -> HspState:
        return await self._hsp("PUT", "/hsp/stop")

    async def hsp_pause(self) -> HspState:
        return await self._hsp("PUT", "/hsp/pause")

    async def hsp_resume(self, pick_up: bool = False) -> HspState:
        return await self._hsp("PUT", "/hsp/resume", json={"pick_up": pick_up})

    async def hsp_sync_time(
        self, current_time: float, server_time: float, filter: float = 0.5
    ) -> HspState:
        payload = {
            "current_time": round(current_time),
            "server_time": round(server_time),
            "filter": filter,
        }
        return await self._hsp("PUT", "/hsp/synctime", json=payload)

    # settings

    async def get_stroke(self) -> StrokeSettings:
        result = await self.request("GET", "/slider/stroke")
        return self._parse(StrokeSettings, result or {}, "GET /slider/stroke")

    async def set_stroke(self, stroke: StrokeSettings) -> StrokeSettings:
        result = await self.request("PUT", "/slider/stroke", json=stroke.model_dump())
        return self._parse(StrokeSettings, result or stroke.model_dump(), "PUT /slider/stroke")

    async def get_offset(self) -> int:
        result = await self.request("GET", "/hstp/offset")
        if not isinstance(result, dict):
            return 0
        try:
            return int(result.get("offset", 0))
        except (TypeError, ValueError) as e:
            raise ProtocolError("GET /hstp/offset returned an invalid offset", data=result) from e

    async def set_offset(self, offset_ms: int) -> None:
        await self.request("PUT", "/hstp/offset", json={"offset": offset_ms})
