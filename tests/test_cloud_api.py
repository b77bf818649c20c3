"""Unit tests for the cloud REST client and the event stream reader"""

import json

import httpx
import pytest

from ive_connect.config import CloudConfig
from ive_connect.devices.cloud import (
    CloudApi,
    HspPoint,
    PointStreamBuffer,
    iter_sse,
    parse_play_state,
)
from ive_connect.devices.cloud.sse import decode_lines
from ive_connect.events import PlayState
from ive_connect.exceptions import DeviceConnectionError, ProtocolError

CONFIG = CloudConfig(
    connection_key="abcdef", api_url="https://cloud.test/api", application_id="app"
)


def make_api(handler) -> CloudApi:
    return CloudApi(CONFIG, transport=httpx.MockTransport(handler))


class TestCloudApi:
    @pytest.mark.asyncio
    async def test_requests_carry_credentials(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"result": {"connected": True}})

        api = make_api(handler)
        assert await api.is_connected()
        await api.aclose()

        (request,) = seen
        assert request.url.path == "/api/connected"
        assert request.headers["X-Connection-Key"] == "abcdef"
        assert request.headers["Authorization"] == "Bearer app"

    @pytest.mark.asyncio
    async def test_error_envelope_raises_protocol_error(self):
        def handler(request):
            return httpx.Response(
                400, json={"error": {"code": 1001, "name": "DeviceNotConnected", "message": "off"}}
            )

        api = make_api(handler)
        with pytest.raises(ProtocolError) as error:
            await api.get_info()
        await api.aclose()

        assert error.value.code == 1001
        assert error.value.message == "off"

    @pytest.mark.asyncio
    async def test_network_failure_raises_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("no route", request=request)

        api = make_api(handler)
        with pytest.raises(DeviceConnectionError):
            await api.is_connected()
        await api.aclose()

    @pytest.mark.asyncio
    async def test_invalid_json_raises_protocol_error(self):
        api = make_api(lambda request: httpx.Response(502, text="<html>bad gateway</html>"))
        with pytest.raises(ProtocolError):
            await api.get_mode()
        await api.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body", [{"server_time": 1234.0}, {"result": {"server_time": 1234}}]
    )
    async def test_server_time_in_both_shapes(self, body):
        api = make_api(lambda request: httpx.Response(200, json=body))
        assert await api.fetch_remote_time() == 1234
        await api.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"server_time": None},
            {"server_time": "soon"},
            {"result": {"server_time": [1234]}},
            {"result": {}},
            {"error": "boom"},
        ],
    )
    async def test_malformed_server_time_raises_protocol_error(self, body):
        api = make_api(lambda request: httpx.Response(200, json=body))
        with pytest.raises(ProtocolError):
            await api.fetch_remote_time()
        await api.aclose()

    @pytest.mark.asyncio
    async def test_malformed_replies_raise_protocol_error(self):
        replies = {
            "/api/info": {"result": {"fw_status": "bogus"}},
            "/api/slider/stroke": {"result": {"min": 5, "max": 9}},
            "/api/hsp/state": {"result": {"points": "many"}},
            "/api/mode": {"error": ["not", "an", "object"]},
        }
        api = make_api(lambda request: httpx.Response(200, json=replies[request.url.path]))

        for call in (api.get_info, api.get_stroke, api.hsp_state, api.get_mode):
            with pytest.raises(ProtocolError):
                await call()
        await api.aclose()

    @pytest.mark.asyncio
    async def test_pause_and_resume_payloads(self):
        requests = []

        def handler(request):
            requests.append((request.method, request.url.path, request.content))
            return httpx.Response(200, json={"result": {"play_state": "3"}})

        api = make_api(handler)
        paused = await api.hsp_pause()
        await api.hsp_resume(pick_up=True)
        await api.aclose()

        assert paused.play_state == PlayState.PAUSED
        (pause_method, pause_path, _), (resume_method, resume_path, resume_body) = requests
        assert (pause_method, pause_path) == ("PUT", "/api/hsp/pause")
        assert (resume_method, resume_path) == ("PUT", "/api/hsp/resume")
        assert json.loads(resume_body) == {"pick_up": True}

    @pytest.mark.asyncio
    async def test_hsp_add_and_play_payloads(self):
        bodies = []

        def handler(request):
            bodies.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"result": {"play_state": 1, "points": 2}})

        api = make_api(handler)
        points = [HspPoint(t=0, x=10), HspPoint(t=500, x=90)]
        await api.hsp_add(points, tail_point_stream_index=2, flush=True, tail_point_threshold=30)
        state = await api.hsp_play(start_time=100.4, server_time=5000.6, pause_on_starving=True)
        await api.aclose()

        (add_path, add), (play_path, play) = bodies
        assert add_path == "/api/hsp/add"
        assert add == {
            "points": [{"t": 0, "x": 10}, {"t": 500, "x": 90}],
            "tail_point_stream_index": 2,
            "flush": True,
            "tail_point_threshold": 30,
        }
        assert play_path == "/api/hsp/play"
        assert play["start_time"] == 100
        assert play["server_time"] == 5001
        assert play["pause_on_starving"] is True
        assert state.play_state == PlayState.PLAYING

    @pytest.mark.asyncio
    async def test_hsp_add_limits_chunk_size(self):
        api = make_api(lambda request: httpx.Response(200, json={"result": {}}))
        with pytest.raises(ValueError):
            await api.hsp_add([HspPoint(t=i, x=0) for i in range(101)], 101)
        await api.aclose()

    def test_event_stream_address(self):
        api = make_api(lambda request: httpx.Response(200))
        assert api.sse_url == "https://cloud.test/api/sse"
        assert api.sse_params == {"ck": "abcdef", "apikey": "app"}
        assert api.name == "cloud:abcdef"


class TestPlayState:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            (1, PlayState.PLAYING),
            ("4", PlayState.STARVING),
            ("paused", PlayState.PAUSED),
            (99, PlayState.NOT_INITIALIZED),
            (None, PlayState.NOT_INITIALIZED),
            ("weird", PlayState.NOT_INITIALIZED),
        ],
    )
    def test_parse_play_state(self, raw, expected):
        assert parse_play_state(raw) == expected


class TestServerSentEvents:
    def test_decode_lines(self):
        events = decode_lines(
            [
                ": keep-alive",
                "event: device_status",
                "id: 7",
                'data: {"data":',
                'data:  {"connected": true}}',
                "",
                "data: plain",
            ]
        )

        first, second = events
        assert first.event == "device_status"
        assert first.id == "7"
        assert first.json() == {"data": {"connected": True}}
        assert second.event == "message"
        assert second.json() is None

    @pytest.mark.asyncio
    async def test_iter_sse_reads_stream(self):
        body = 'event: device_connected\ndata: {}\n\nevent: mode_changed\ndata: {"mode": 1}\n\n'

        def handler(request):
            assert request.url.params["ck"] == "abcdef"
            return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            events = [
                e async for e in iter_sse(client, "https://cloud.test/api/sse", {"ck": "abcdef"})
            ]

        assert [e.event for e in events] == ["device_connected", "mode_changed"]

    @pytest.mark.asyncio
    async def test_iter_sse_rejects_error_status(self):
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(401))
        ) as client:
            with pytest.raises(DeviceConnectionError):
                async for _ in iter_sse(client, "https://cloud.test/api/sse"):
                    pass


class TestPointStreamBuffer:
    @pytest.fixture
    def buffer(self):
        points = [HspPoint(t=i * 100, x=i % 100) for i in range(250)]
        return PointStreamBuffer(points, chunk_size=100, threshold=30)

    def test_chunks_carry_tail_index(self, buffer):
        chunk, tail = buffer.next_chunk()
        assert len(chunk) == 100
        assert tail == 100
        assert buffer.next_chunk()[1] == 200
        chunk, tail = buffer.next_chunk()
        assert len(chunk) == 50
        assert tail == 250
        assert buffer.exhausted
        assert buffer.next_chunk() is None

    def test_refill_threshold(self, buffer):
        buffer.next_chunk()
        assert not buffer.needs_refill(70)
        assert buffer.needs_refill(71)
        assert buffer.remaining_ahead(150) == 0

    def test_seek(self, buffer):
        buffer.seek(240)
        chunk, tail = buffer.next_chunk()
        assert chunk[0].t == 24_000
        assert tail == 250
        buffer.seek(-5)
        assert buffer.tail_index == 0
