from ive_connect.clock.synchronizer import (
    ClockEndpoint,
    ClockEstimate,
    ClockSample,
    ClockSynchronizer,
    TimeSource,
    epoch_ms,
    estimate_offset,
)

__all__ = [
    "ClockEndpoint",
    "ClockEstimate",
    "ClockSample",
    "ClockSynchronizer",
    "TimeSource",
    "epoch_ms",
    "estimate_offset",
]
