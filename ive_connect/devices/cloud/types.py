from typing import Any, Optional

from pydantic import BaseModel, Field

from ive_connect.events.models import PlayState
from ive_connect.exceptions import ProtocolError

# numeric play state codes of the streaming-buffer protocol
_PLAY_STATE_CODES = {
    0: PlayState.NOT_INITIALIZED,
    1: PlayState.PLAYING,
    2: PlayState.STOPPED,
    3: PlayState.PAUSED,
    4: PlayState.STARVING,
}


def parse_play_state(raw: Any) -> PlayState:
    """Parse a play state that arrives as int, numeric string or name.

    Unknown values map to ``NOT_INITIALIZED``.
    """
    if isinstance(raw, PlayState):
        return raw
    if isinstance(raw, bool):
        return PlayState.NOT_INITIALIZED
    if isinstance(raw, int):
        return _PLAY_STATE_CODES.get(raw, PlayState.NOT_INITIALIZED)
    if isinstance(raw, str):
        text = raw.strip()
        if text.lstrip("-").isdigit():
            return _PLAY_STATE_CODES.get(int(text), PlayState.NOT_INITIALIZED)
        try:
            return PlayState[text.upper()]
        except KeyError:
            pass
    return PlayState.NOT_INITIALIZED


class ApiErrorDetail(BaseModel):
    code: Optional[int] = None
    name: Optional[str] = None
    message: str = "Unknown error"
    connected: Optional[bool] = None
    data: Any = None


class ApiEnvelope(BaseModel):
    """Every REST reply is wrapped as ``{"result": ...}`` or ``{"error": {...}}``"""

    result: Any = None
    error: Optional[ApiErrorDetail] = None

    def unwrap(self) -> Any:
        """Return ``result`` or raise the remote error.

        Raises:
            ProtocolError: If the envelope carries an error.
        """
        if self.error is not None:
            raise ProtocolError(self.error.message, code=self.error.code, data=self.error.data)
        return self.result


class HspPoint(BaseModel):
    """A point of the device-side stream: time ``t`` in ms, position ``x`` 0..100"""

    t: int
    x: int = Field(..., ge=0, le=100)


class HspState(BaseModel):
    """State of the device-side point buffer"""

    play_state: PlayState = PlayState.NOT_INITIALIZED
    points: int = 0
    max_points: Optional[int] = None
    current_point: Optional[int] = None
    current_time: Optional[int] = None
    loop: Optional[bool] = None
    playback_rate: Optional[float] = None
    first_point_time: Optional[int] = None
    last_point_time: Optional[int] = None
    stream_id: Optional[int] = None
    tail_point_stream_index: Optional[int] = None
    tail_point_stream_index_threshold: Optional[int] = None

    @classmethod
    def from_result(cls, result: Any) -> "HspState":
        if not isinstance(result, dict):
            return cls()
        data = dict(result)
        data["play_state"] = parse_play_state(data.get("play_state"))
        return cls.model_validate(data)


class CloudDeviceInfo(BaseModel):
    model_config = {"extra": "allow"}

    fw_version: Optional[str] = None
    fw_status: Optional[int] = None
    hw_model_name: Optional[str] = None
    session_id: Optional[str] = None


class StrokeSettings(BaseModel):
    """Usable stroke range, both values 0..1"""

    min: float = Field(default=0.0, ge=0, le=1)
    max: float = Field(default=1.0, ge=0, le=1)
