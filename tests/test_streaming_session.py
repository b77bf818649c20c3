"""Unit tests for the streaming server session"""

import asyncio

import pytest
import pytest_asyncio

from ive_connect.commands.types import DevicePreference, VibrateCommand
from ive_connect.config import StreamingConfig
from ive_connect.devices.streaming import StreamingSession
from ive_connect.events import (
    CommandDispatchErrorEvent,
    ConnectionState,
    DeviceAddedEvent,
    DeviceRemovedEvent,
    ScanningChangedEvent,
    SessionErrorEvent,
)
from ive_connect.exceptions import CommandDispatchError, DeviceConnectionError
from ive_connect.timeline import Action, TimelineStep

STROKER = {
    "DeviceIndex": 0,
    "DeviceName": "Stroker",
    "DeviceFeatures": {
        "0": {
            "FeatureIndex": 0,
            "Output": {"HwPositionWithDuration": {"Value": [0, 100], "Duration": [0, 100000]}},
        }
    },
}
VIBRATOR = {
    "DeviceIndex": 1,
    "DeviceName": "Vibrator",
    "DeviceDisplayName": "Bedside",
    "DeviceFeatures": {"0": {"FeatureIndex": 0, "Output": {"Vibrate": {"Value": [0, 20]}}}},
}
ROTATOR = {
    "DeviceIndex": 2,
    "DeviceName": "Rotator",
    "DeviceFeatures": [{"FeatureIndex": 0, "Output": {"Rotate": {"Value": [0, 10]}}}],
}

UP = TimelineStep(
    index=1,
    action=Action(at=1000, pos=100),
    previous_action=Action(at=0, pos=0),
    travel_duration_ms=1000,
)


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def drain(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


def output_commands(fake_ws) -> dict[int, dict]:
    messages = fake_ws.sent_messages("OutputCmd")
    return {body["DeviceIndex"]: body["Command"] for _, body in messages}


@pytest.fixture
def make_streaming_session(fake_ws):
    fake_ws.device_list = {"Devices": {"0": STROKER, "1": VIBRATOR}}

    async def connector(url):
        return fake_ws

    def factory(**overrides) -> StreamingSession:
        config = StreamingConfig(url="ws://test", request_timeout_s=1, **overrides)
        return StreamingSession(config, session_id="local", connector=connector)

    return factory


@pytest_asyncio.fixture
async def session(make_streaming_session):
    session = make_streaming_session()
    await session.connect()
    yield session
    await session.disconnect()


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_discovers_devices(self, session, fake_ws):
        assert session.connection_state == ConnectionState.CONNECTED
        assert set(session.devices) == {"0", "1"}
        assert session.devices["0"].can_linear
        assert session.devices["1"].can_vibrate
        assert session.devices["1"].step_resolution == {"Vibrate": 20}
        assert session.device_names == {"0": "Stroker", "1": "Bedside"}

        (_, handshake), (name, _) = fake_ws.sent_messages()
        assert handshake["ClientName"].startswith("IVE-Connect-")
        assert name == "RequestDeviceList"

    @pytest.mark.asyncio
    async def test_default_preferences_follow_capabilities(self, session):
        assert session.get_preference("0").use_linear
        assert not session.get_preference("0").use_vibrate
        assert session.get_preference("1").use_vibrate
        assert session.is_enabled

    @pytest.mark.asyncio
    async def test_scan_on_connect(self, make_streaming_session, fake_ws):
        session = make_streaming_session(scan_on_connect=True)
        await session.connect()

        assert session.is_scanning
        assert fake_ws.sent_messages("StartScanning")
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_failed_handshake_leaves_session_disconnected(
        self, make_streaming_session, fake_ws
    ):
        fake_ws.reject = lambda name, body: "go away"
        session = make_streaming_session()

        with pytest.raises(DeviceConnectionError):
            await session.connect()

        assert session.connection_state == ConnectionState.DISCONNECTED
        assert session.devices == {}

    @pytest.mark.asyncio
    async def test_dropped_transport_disconnects_session(self, session, fake_ws):
        events = session.events.subscribe()

        fake_ws.drop()
        await settle()

        assert session.connection_state == ConnectionState.DISCONNECTED
        assert session.devices == {}
        received = drain(events)
        assert sum(isinstance(e, DeviceRemovedEvent) for e in received) == 2
        assert any(isinstance(e, SessionErrorEvent) for e in received)


class TestDevicePushes:
    @pytest.mark.asyncio
    async def test_device_added_and_removed(self, session, fake_ws):
        events = session.events.subscribe()

        fake_ws.feed([{"DeviceAdded": {"Id": 0, **ROTATOR}}])
        await settle()
        assert session.devices["2"].can_rotate
        assert session.get_device("2").name == "Rotator"

        fake_ws.feed([{"DeviceRemoved": {"Id": 0, "DeviceIndex": 2}}])
        await settle()
        assert "2" not in session.devices

        added, removed = drain(events)
        assert isinstance(added, DeviceAddedEvent)
        assert added.device_id == "2"
        assert isinstance(removed, DeviceRemovedEvent)

    @pytest.mark.asyncio
    async def test_device_list_push_is_diffed(self, session, fake_ws):
        fake_ws.feed([{"DeviceList": {"Id": 0, "Devices": {"1": VIBRATOR, "2": ROTATOR}}}])
        await settle()

        assert set(session.devices) == {"1", "2"}

    @pytest.mark.asyncio
    async def test_scanning_lifecycle(self, session, fake_ws):
        events = session.events.subscribe()

        await session.start_scanning()
        assert session.is_scanning
        fake_ws.feed([{"ScanningFinished": {"Id": 0}}])
        await settle()

        assert not session.is_scanning
        assert [e.scanning for e in drain(events) if isinstance(e, ScanningChangedEvent)] == [
            True,
            False,
        ]


class TestDispatch:
    @pytest.mark.asyncio
    async def test_step_is_translated_per_device(self, session, fake_ws):
        await session.dispatch(UP)

        commands = output_commands(fake_ws)
        assert commands[0] == {"HwPositionWithDuration": {"Value": 100, "Duration": 1000}}
        assert commands[1] == {"Vibrate": {"Value": 20}}

    @pytest.mark.asyncio
    async def test_preferences_shape_the_commands(self, session, fake_ws):
        preference = DevicePreference(range_min=0.25, range_max=0.75, invert=True)
        session.set_preference("0", preference)
        session.update_preference("1", enabled=False)

        await session.dispatch(UP)

        commands = output_commands(fake_ws)
        assert commands == {0: {"HwPositionWithDuration": {"Value": 25, "Duration": 1000}}}

    @pytest.mark.asyncio
    async def test_failing_device_does_not_block_others(self, session, fake_ws):
        fake_ws.reject = lambda name, body: "busy" if body.get("DeviceIndex") == 1 else None
        events = session.events.subscribe()

        await session.dispatch(UP)

        assert 0 in output_commands(fake_ws)
        errors = [e for e in drain(events) if isinstance(e, CommandDispatchErrorEvent)]
        assert len(errors) == 1
        assert errors[0].device_id == "1"

    @pytest.mark.asyncio
    async def test_unknown_device_command(self, session):
        with pytest.raises(CommandDispatchError):
            await session.send_command("9", VibrateCommand(speed=0.5))

    @pytest.mark.asyncio
    async def test_dispatch_after_disconnect_is_ignored(self, session, fake_ws):
        await session.disconnect()
        sent = len(fake_ws.sent)

        await session.dispatch(UP)

        assert len(fake_ws.sent) == sent


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_sends_stop_to_every_device(self, session, fake_ws):
        await session.stop_playback()

        stops = sorted(body["DeviceIndex"] for _, body in fake_ws.sent_messages("StopCmd"))
        assert stops == [0, 1]
        assert all(body["Outputs"] for _, body in fake_ws.sent_messages("StopCmd"))

    @pytest.mark.asyncio
    async def test_failed_stop_is_reported(self, session, fake_ws):
        fake_ws.reject = lambda name, body: "stuck" if name == "StopCmd" else None
        events = session.events.subscribe()

        await session.stop_playback()

        errors = [e for e in drain(events) if isinstance(e, SessionErrorEvent)]
        assert len(errors) == 2
