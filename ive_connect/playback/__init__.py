from ive_connect.playback.playback_state import SessionPlaybackState, TickResult
from ive_connect.playback.scheduler import PlaybackScheduler

__all__ = ["PlaybackScheduler", "SessionPlaybackState", "TickResult"]
