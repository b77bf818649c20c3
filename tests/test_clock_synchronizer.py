"""Unit tests for the round-trip clock synchronizer"""

import asyncio
from typing import Optional

import pytest

from ive_connect.clock import ClockSample, ClockSynchronizer, estimate_offset
from ive_connect.config import ClockSyncConfig
from ive_connect.exceptions import ClockSyncError, DeviceConnectionError


class ScriptedEndpoint:
    """Endpoint whose replies advance a fake clock by a scripted round trip"""

    def __init__(
        self, clock, remote_offset: float, round_trips: list[float], name: str = "remote"
    ):
        self.name = name
        self._clock = clock
        self._remote_offset = remote_offset
        self._round_trips = list(round_trips)
        self.calls = 0

    async def fetch_remote_time(self) -> Optional[float]:
        self.calls += 1
        round_trip = self._round_trips.pop(0)
        if round_trip < 0:
            raise DeviceConnectionError("unreachable")
        # remote reads its clock half-way through the round trip
        self._clock.advance(round_trip / 2)
        remote = self._clock.now + self._remote_offset
        self._clock.advance(round_trip / 2)
        return remote


class TestEstimateOffset:
    def test_no_samples(self):
        assert estimate_offset([]) is None

    def test_outlier_is_excluded(self):
        samples = [ClockSample(round_trip_ms=20, offset_ms=100) for _ in range(9)]
        samples.append(ClockSample(round_trip_ms=200, offset_ms=5000))

        estimate = estimate_offset(samples, retain_ratio=0.8, min_samples_for_trim=4)

        assert estimate.sample_count == 8
        assert estimate.offset_ms == pytest.approx(100)

    def test_small_sample_sets_are_not_trimmed(self):
        samples = [ClockSample(10, 100), ClockSample(20, 200), ClockSample(30, 300)]
        estimate = estimate_offset(samples, retain_ratio=0.8, min_samples_for_trim=4)
        assert estimate.sample_count == 3
        assert estimate.offset_ms == pytest.approx(200)


class TestClockSynchronizer:
    @pytest.fixture
    def synchronizer(self, clock):
        return ClockSynchronizer(ClockSyncConfig(sample_count=10), time_source=clock)

    @pytest.mark.asyncio
    async def test_probe_measures_symmetric_offset(self, synchronizer, clock):
        endpoint = ScriptedEndpoint(clock, remote_offset=2500, round_trips=[40] * 10)

        offset = await synchronizer.probe(endpoint)

        assert offset == pytest.approx(2500)
        assert endpoint.calls == 10
        assert synchronizer.estimate_remote_now("remote") == pytest.approx(clock.now + 2500)

    @pytest.mark.asyncio
    async def test_probe_ignores_high_delay_outlier(self, synchronizer, clock):
        endpoint = ScriptedEndpoint(clock, remote_offset=1000, round_trips=[20] * 9 + [200])

        await synchronizer.probe(endpoint)

        estimate = synchronizer.get_estimate("remote")
        assert estimate.sample_count == 8
        assert estimate.offset_ms == pytest.approx(1000)

    @pytest.mark.asyncio
    async def test_failed_samples_are_skipped(self, synchronizer, clock):
        endpoint = ScriptedEndpoint(clock, remote_offset=300, round_trips=[-1, 10, -1] + [10] * 7)

        offset = await synchronizer.probe(endpoint)

        assert offset == pytest.approx(300)

    @pytest.mark.asyncio
    async def test_no_samples_keeps_previous_estimate(self, synchronizer, clock):
        await synchronizer.probe(ScriptedEndpoint(clock, 700, [10] * 10))

        offset = await synchronizer.probe(ScriptedEndpoint(clock, 9999, [-1] * 10))

        assert offset == pytest.approx(700)
        assert synchronizer.offset_ms("remote") == pytest.approx(700)

    @pytest.mark.asyncio
    async def test_no_samples_without_previous_estimate_raises(self, synchronizer, clock):
        with pytest.raises(ClockSyncError):
            await synchronizer.probe(ScriptedEndpoint(clock, 0, [-1] * 10))

    def test_unknown_endpoint_has_zero_offset(self, synchronizer, clock):
        assert synchronizer.estimate_remote_now("nobody") == clock.now

    @pytest.mark.asyncio
    async def test_time_source_follows_estimate(self, synchronizer, clock):
        source = synchronizer.time_source("remote")
        await synchronizer.probe(ScriptedEndpoint(clock, 50, [10] * 10))
        assert source() == pytest.approx(clock.now + 50)

    @pytest.mark.asyncio
    async def test_periodic_probe_can_be_cancelled(self, synchronizer, clock):
        endpoint = ScriptedEndpoint(clock, 10, [10] * 1000)

        task = synchronizer.start_periodic(endpoint, interval_s=0.01)
        await asyncio.sleep(0.05)
        synchronizer.cancel("remote")
        with pytest.raises(asyncio.CancelledError):
            await task

        assert endpoint.calls >= 10
        assert synchronizer.get_estimate("remote") is not None

    @pytest.mark.asyncio
    async def test_slow_endpoint_times_out(self, clock):
        class SlowEndpoint:
            name = "slow"

            async def fetch_remote_time(self):
                await asyncio.sleep(10)

        synchronizer = ClockSynchronizer(
            ClockSyncConfig(sample_count=2, probe_timeout_s=0.01), time_source=clock
        )
        with pytest.raises(ClockSyncError):
            await synchronizer.probe(SlowEndpoint())
