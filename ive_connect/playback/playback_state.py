"""Playback bookkeeping owned by the scheduler."""

from dataclasses import dataclass
from enum import Enum

from ive_connect.events.models import PlayState, SchedulerState

NO_INDEX = -1


class TickResult(Enum):
    """What a single scheduler tick did"""

    IDLE = "idle"
    DISPATCHED = "dispatched"
    UNCHANGED = "unchanged"
    LOOPED = "looped"
    FINISHED = "finished"


@dataclass
class SessionPlaybackState:
    """Per-session playback state, only touched from the event loop thread"""

    is_playing: bool = False
    start_epoch_ms: float = 0.0
    playback_rate: float = 1.0
    loop: bool = False
    last_dispatched_index: int = NO_INDEX

    def reset_dispatch(self) -> None:
        """Forget the last dispatched index so the next tick dispatches again."""
        self.last_dispatched_index = NO_INDEX

    def elapsed_ms(self, now_ms: float) -> float:
        return (now_ms - self.start_epoch_ms) * self.playback_rate


__all__ = ["NO_INDEX", "PlayState", "SchedulerState", "SessionPlaybackState", "TickResult"]
