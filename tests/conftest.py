import asyncio
import json
from typing import Any, Callable, Optional

import pytest

from ive_connect.commands.types import DeviceCapabilitySet
from ive_connect.devices.registry import DeviceRegistry
from ive_connect.devices.session import DeviceSession
from ive_connect.timeline.timeline import Action, Timeline, TimelineStep


class FakeClock:
    """Manually advanced millisecond clock"""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeSession(DeviceSession):
    """In-memory session recording every call"""

    kind = "fake"

    def __init__(
        self,
        session_id: str = "fake",
        capabilities: Optional[DeviceCapabilitySet] = None,
        fail_stop: bool = False,
        fail_dispatch: bool = False,
    ):
        super().__init__(session_id)
        self._initial_capabilities = capabilities or DeviceCapabilitySet(can_linear=True)
        self.fail_stop = fail_stop
        self.fail_dispatch = fail_dispatch
        self.dispatched: list[TimelineStep] = []
        self.started: list[tuple[float, float, bool]] = []
        self.stop_calls = 0
        self.loop_calls = 0
        self.sync_calls: list[tuple[float, Optional[float]]] = []

    async def _connect(self) -> None:
        self._add_device("0", "Fake device", self._initial_capabilities)

    async def _disconnect(self) -> None:
        return None

    async def _start_playback(self, timeline, time_ms, playback_rate, loop) -> None:
        self.started.append((time_ms, playback_rate, loop))

    async def _dispatch(self, step: TimelineStep) -> None:
        if self.fail_dispatch:
            raise RuntimeError("dispatch failed")
        self.dispatched.append(step)

    async def _stop_playback(self) -> None:
        self.stop_calls += 1
        if self.fail_stop:
            raise RuntimeError("stop failed")

    async def sync_time(self, time_ms: float, filter: Optional[float] = None) -> bool:
        self.sync_calls.append((time_ms, filter))
        return True

    async def on_loop(self) -> None:
        self.loop_calls += 1


class FakeWebSocket:
    """Stands in for a websockets client connection"""

    def __init__(self) -> None:
        self.sent: list[Any] = []
        self._incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.auto_reply = True
        self.server_info: dict[str, Any] = {"ServerName": "Fake server", "MaxPingTime": 0}
        self.device_list: dict[str, Any] = {"Devices": {}}
        # returns an error message to reject a request
        self.reject: Optional[Callable[[str, dict], Optional[str]]] = None

    def feed(self, frame: Any) -> None:
        self._incoming.put_nowait(json.dumps(frame) if not isinstance(frame, str) else frame)

    def drop(self) -> None:
        """Simulate the server closing the connection"""
        self._incoming.put_nowait(None)

    def sent_messages(self, message_type: Optional[str] = None) -> list[tuple[str, dict]]:
        messages = []
        for raw in self.sent:
            for entry in json.loads(raw):
                ((name, body),) = entry.items()
                if message_type is None or name == message_type:
                    messages.append((name, body))
        return messages

    async def send(self, raw: str) -> None:
        if self.closed:
            raise OSError("socket closed")
        self.sent.append(raw)
        if not self.auto_reply:
            return
        ((name, body),) = json.loads(raw)[0].items()
        message_id = body["Id"]
        error = self.reject(name, body) if self.reject is not None else None
        if error is not None:
            self.feed([{"Error": {"Id": message_id, "ErrorMessage": error, "ErrorCode": 4}}])
            return
        if name == "RequestServerInfo":
            self.feed([{"ServerInfo": {"Id": message_id, **self.server_info}}])
        elif name == "RequestDeviceList":
            self.feed([{"DeviceList": {"Id": message_id, **self.device_list}}])
        else:
            self.feed([{"Ok": {"Id": message_id}}])

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def three_actions():
    """The 0 -> 100 -> 0 timeline used throughout the scheduler tests"""
    return Timeline(
        actions=(Action(at=0, pos=0), Action(at=1000, pos=100), Action(at=2000, pos=0))
    )


@pytest.fixture
def registry():
    return DeviceRegistry()


@pytest.fixture
def fake_ws():
    return FakeWebSocket()


@pytest.fixture
def make_session():
    """Factory for fake sessions"""
    return FakeSession
