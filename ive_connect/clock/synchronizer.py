"""Round-trip clock offset estimation against remote endpoints.

For every sample the local send time, the remote timestamp and the local receive
time are recorded. Assuming a symmetric path, the remote clock read ``rtd / 2``
before the sample was received, which gives ``offset = rtd / 2 + remote - received``.
The samples with the largest round-trip delay carry the most asymmetric jitter and
are dropped before averaging.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, runtime_checkable

from ive_connect.config import ClockSyncConfig, default_clock_config
from ive_connect.exceptions import ClockSyncError, HapticError

logger = logging.getLogger(__name__)

TimeSource = Callable[[], float]


def epoch_ms() -> float:
    """Local wall-clock time in milliseconds."""
    return time.time() * 1000


@runtime_checkable
class ClockEndpoint(Protocol):
    """A remote side that can report its current time in epoch milliseconds."""

    @property
    def name(self) -> str: ...

    async def fetch_remote_time(self) -> Optional[float]:
        """Return the remote time in ms, or None if the reply carried no time."""
        ...


@dataclass(frozen=True)
class ClockSample:
    round_trip_ms: float
    offset_ms: float


@dataclass(frozen=True)
class ClockEstimate:
    """Current clock offset of one endpoint"""

    offset_ms: float
    last_round_trip_ms: float
    sample_count: int


def estimate_offset(
    samples: list[ClockSample], retain_ratio: float = 0.8, min_samples_for_trim: int = 4
) -> Optional[ClockEstimate]:
    """Average the offsets of the lowest-delay samples.

    Returns None when there are no samples.
    """
    if not samples:
        return None
    ordered = sorted(samples, key=lambda sample: sample.round_trip_ms)
    if len(ordered) >= min_samples_for_trim:
        ordered = ordered[: math.ceil(len(ordered) * retain_ratio)]
    offset = sum(sample.offset_ms for sample in ordered) / len(ordered)
    return ClockEstimate(
        offset_ms=offset,
        last_round_trip_ms=samples[-1].round_trip_ms,
        sample_count=len(ordered),
    )


class ClockSynchronizer:
    """Keeps one clock offset estimate per remote endpoint.

    Estimates are only written by :meth:`probe`. Readers always see the latest
    complete estimate.

    Args:
        config: Sampling parameters.
        time_source: Local clock in milliseconds, injectable for tests.
    """

    def __init__(
        self,
        config: ClockSyncConfig = default_clock_config,
        time_source: TimeSource = epoch_ms,
    ):
        self._config = config
        self._now = time_source
        self._estimates: dict[str, ClockEstimate] = {}
        self._periodic_tasks: dict[str, asyncio.Task] = {}

    @property
    def config(self) -> ClockSyncConfig:
        return self._config

    def get_estimate(self, endpoint_name: str) -> Optional[ClockEstimate]:
        return self._estimates.get(endpoint_name)

    def offset_ms(self, endpoint_name: str) -> float:
        """Return the current offset, 0 if none was established yet."""
        estimate = self._estimates.get(endpoint_name)
        return estimate.offset_ms if estimate else 0.0

    def estimate_remote_now(self, endpoint_name: str) -> float:
        """Return the endpoint's current time in epoch milliseconds."""
        return self._now() + self.offset_ms(endpoint_name)

    def time_source(self, endpoint_name: str) -> TimeSource:
        """Return a callable reading the endpoint's clock, usable as a scheduler clock."""
        return lambda: self.estimate_remote_now(endpoint_name)

    async def _sample(self, endpoint: ClockEndpoint) -> Optional[ClockSample]:
        sent = self._now()
        try:
            remote = await asyncio.wait_for(
                endpoint.fetch_remote_time(), timeout=self._config.probe_timeout_s
            )
        except (asyncio.TimeoutError, HapticError) as e:
            logger.debug(f"Clock probe to {endpoint.name} failed: {e!r}")
            return None
        received = self._now()
        if remote is None:
            return None
        round_trip = received - sent
        return ClockSample(round_trip_ms=round_trip, offset_ms=round_trip / 2 + remote - received)

    async def probe(self, endpoint: ClockEndpoint) -> float:
        """Measure the offset to ``endpoint`` and store the new estimate.

        Failed samples are skipped. If no sample succeeds, the previous estimate is
        kept.

        Returns:
            The current offset in milliseconds.

        Raises:
            ClockSyncError: If no sample succeeded and no offset was ever established.
        """
        samples: list[ClockSample] = []
        for _ in range(self._config.sample_count):
            sample = await self._sample(endpoint)
            if sample is not None:
                samples.append(sample)

        estimate = estimate_offset(
            samples, self._config.retain_ratio, self._config.min_samples_for_trim
        )
        if estimate is None:
            previous = self._estimates.get(endpoint.name)
            if previous is None:
                raise ClockSyncError(endpoint.name)
            logger.warning(
                f"No clock samples from {endpoint.name}, keeping offset {previous.offset_ms:.1f}ms"
            )
            return previous.offset_ms

        self._estimates[endpoint.name] = estimate
        logger.debug(
            f"Clock offset for {endpoint.name}: {estimate.offset_ms:.1f}ms "
            f"from {estimate.sample_count}/{len(samples)} samples"
        )
        return estimate.offset_ms

    def start_periodic(self, endpoint: ClockEndpoint, interval_s: float) -> asyncio.Task:
        """Re-probe ``endpoint`` every ``interval_s`` seconds until cancelled."""
        self.cancel(endpoint.name)
        task = asyncio.create_task(
            self._periodic(endpoint, interval_s), name=f"clock-sync-{endpoint.name}"
        )
        self._periodic_tasks[endpoint.name] = task
        return task

    async def _periodic(self, endpoint: ClockEndpoint, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                await self.probe(endpoint)
            except ClockSyncError as e:
                logger.debug(f"Periodic clock sync failed: {e}")

    def is_syncing(self, endpoint_name: str) -> bool:
        task = self._periodic_tasks.get(endpoint_name)
        return task is not None and not task.done()

    def cancel(self, endpoint_name: str) -> None:
        """Stop periodic probing of one endpoint. Safe to call repeatedly."""
        task = self._periodic_tasks.pop(endpoint_name, None)
        if task is not None and not task.done():
            task.cancel()

    def cancel_all(self) -> None:
        for name in list(self._periodic_tasks):
            self.cancel(name)

    def forget(self, endpoint_name: str) -> None:
        """Cancel probing and drop the estimate of an endpoint."""
        self.cancel(endpoint_name)
        self._estimates.pop(endpoint_name, None)
