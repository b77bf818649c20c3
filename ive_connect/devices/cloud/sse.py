"""Minimal server-sent events reader on top of httpx streaming responses."""

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable, Optional

import httpx

from ive_connect.exceptions import DeviceConnectionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServerSentEvent:
    event: str
    data: str
    id: Optional[str] = None

    def json(self) -> Any:
        """Decode ``data`` as JSON, None if it is not JSON."""
        try:
            return json.loads(self.data)
        except json.JSONDecodeError:
            return None


class SseDecoder:
    """Incremental decoder: feed lines, get events at blank lines."""

    def __init__(self) -> None:
        self._event = ""
        self._data: list[str] = []
        self._id: Optional[str] = None

    def feed(self, line: str) -> Optional[ServerSentEvent]:
        line = line.rstrip("\r\n")
        if not line:
            return self._flush()
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        elif field == "id":
            self._id = value
        return None

    def _flush(self) -> Optional[ServerSentEvent]:
        if not self._data and not self._event:
            return None
        event = ServerSentEvent(
            event=self._event or "message", data="\n".join(self._data), id=self._id
        )
        self._event = ""
        self._data = []
        return event


def decode_lines(lines: Iterable[str]) -> list[ServerSentEvent]:
    decoder = SseDecoder()
    events = [event for event in map(decoder.feed, lines) if event is not None]
    tail = decoder.feed("")
    if tail is not None:
        events.append(tail)
    return events


async def iter_sse(
    client: httpx.AsyncClient, url: str, params: Optional[dict[str, Any]] = None
) -> AsyncIterator[ServerSentEvent]:
    """Open an event stream and yield events until the server closes it.

    Raises:
        DeviceConnectionError: If the stream cannot be opened or breaks.
    """
    decoder = SseDecoder()
    try:
        async with client.stream(
            "GET",
            url,
            params=params,
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(None, connect=10.0),
        ) as response:
            if response.status_code != 200:
                raise DeviceConnectionError(f"Event stream returned HTTP {response.status_code}")
            async for line in response.aiter_lines():
                event = decoder.feed(line)
                if event is not None:
                    yield event
    except httpx.HTTPError as e:
        raise DeviceConnectionError(f"Event stream failed: {e}") from e
    tail = decoder.feed("")
    if tail is not None:
        yield tail
