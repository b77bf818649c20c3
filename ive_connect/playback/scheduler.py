"""Playback Scheduler

Turns wall-clock time into timeline positions and fans the resulting steps out to
every active device session.

A single task ticks at a fixed interval. Each tick resolves the current timeline
step once and hands it to every session whose last dispatched index differs.
Dispatches run as independent tasks, so a slow device never delays the tick or
the other devices.
"""

import asyncio
import logging
from functools import partial
from typing import Optional

from ive_connect.clock.synchronizer import TimeSource, epoch_ms
from ive_connect.config import PlaybackConfig, default_playback_config
from ive_connect.devices.registry import DeviceRegistry
from ive_connect.devices.session import DeviceSession
from ive_connect.events.models import (
    CommandDispatchErrorEvent,
    PlaybackLoopedEvent,
    SchedulerState,
    SchedulerStateChangedEvent,
    ScriptLoadedEvent,
    SessionErrorEvent,
)
from ive_connect.exceptions import PlaybackControlError, TimelineError
from ive_connect.playback.playback_state import SessionPlaybackState, TickResult
from ive_connect.timeline.timeline import Timeline, TimelineIndex, TimelineStep

logger = logging.getLogger(__name__)


class PlaybackScheduler:
    """Drives timeline playback on every registered session.

    Args:
        registry: Source of the device sessions and event hub for scheduler events.
        config: Tick interval, end tolerance and travel durations.
        time_source: Clock in milliseconds. Pass
            ``ClockSynchronizer.time_source(endpoint)`` to play in a remote time base.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        config: PlaybackConfig = default_playback_config,
        time_source: TimeSource = epoch_ms,
    ):
        self._registry = registry
        self._config = config
        self._now = time_source
        self._timeline: Optional[Timeline] = None
        self._index: Optional[TimelineIndex] = None
        self._state = SchedulerState.IDLE
        self._playback = SessionPlaybackState()
        self._session_states: dict[str, SessionPlaybackState] = {}
        self._tick_task: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()
        self._loop_count = 0

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_playing(self) -> bool:
        return self._state == SchedulerState.PLAYING

    @property
    def timeline(self) -> Optional[Timeline]:
        return self._timeline

    @property
    def config(self) -> PlaybackConfig:
        return self._config

    @property
    def current_time_ms(self) -> Optional[float]:
        """Elapsed timeline time, None when not playing."""
        if not self.is_playing:
            return None
        return self._playback.elapsed_ms(self._now())

    def session_state(self, session_id: str) -> Optional[SessionPlaybackState]:
        return self._session_states.get(session_id)

    def _set_state(self, new_state: SchedulerState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        logger.debug(f"Scheduler state: {old_state.value} -> {new_state.value}")
        self._registry.hub.publish(
            SchedulerStateChangedEvent(old_state=old_state, new_state=new_state)
        )

    def _eligible(self, session: DeviceSession) -> bool:
        return session.is_connected and session.is_enabled

    async def load(self, timeline: Timeline) -> None:
        """Replace the timeline. A running playback is stopped first.

        Raises:
            TimelineError: If the timeline has no actions.
        """
        if timeline.is_empty:
            raise TimelineError("Script has no actions")
        if self.is_playing:
            await self.stop()
        self._timeline = timeline
        self._index = TimelineIndex(
            timeline,
            min_travel_ms=self._config.min_travel_ms,
            default_travel_ms=self._config.default_travel_ms,
        )
        self._registry.hub.publish(
            ScriptLoadedEvent(
                action_count=len(timeline),
                duration_ms=timeline.duration_ms,
                loaded_from=timeline.loaded_from,
            )
        )

    async def start(
        self, time_ms: float = 0, playback_rate: float = 1.0, loop: bool = False
    ) -> None:
        """Start playback at ``time_ms`` on every connected, enabled session.

        Raises:
            TimelineError: If no non-empty timeline is loaded.
            PlaybackControlError: If no session can play or the rate is not positive.
        """
        if self._timeline is None or self._index is None or self._timeline.is_empty:
            raise TimelineError("No script loaded")
        if playback_rate <= 0:
            raise PlaybackControlError(f"Playback rate must be positive, got {playback_rate}")
        sessions = [s for s in self._registry.sessions() if self._eligible(s)]
        if not sessions:
            raise PlaybackControlError("No connected session with an enabled device")

        if self.is_playing:
            await self.stop()

        self._loop_count = 0
        self._playback = SessionPlaybackState(
            is_playing=True,
            start_epoch_ms=self._now() - time_ms / playback_rate,
            playback_rate=playback_rate,
            loop=loop,
        )
        self._session_states = {s.session_id: self._new_session_state() for s in sessions}

        timeline = self._timeline
        results = await asyncio.gather(
            *(s.start_playback(timeline, time_ms, playback_rate, loop) for s in sessions),
            return_exceptions=True,
        )
        started = 0
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.warning(f"Session {session.session_id} failed to start: {result}")
                self._session_states[session.session_id].is_playing = False
                self._publish_session_error(session.session_id, "Failed to start playback", result)
            elif isinstance(result, BaseException):
                raise result
            else:
                started += 1
        if not started:
            self._session_states.clear()
            raise PlaybackControlError("No session could start playback")

        self._set_state(SchedulerState.PLAYING)
        logger.info(
            f"Playback started at {time_ms}ms, rate {playback_rate}, loop {loop}, "
            f"{started} session(s)"
        )
        self._tick_task = asyncio.create_task(self._run(), name="playback-tick")

    def _new_session_state(self) -> SessionPlaybackState:
        return SessionPlaybackState(
            is_playing=True,
            start_epoch_ms=self._playback.start_epoch_ms,
            playback_rate=self._playback.playback_rate,
            loop=self._playback.loop,
        )

    def tick(self) -> TickResult:
        """Resolve the current step and dispatch it where it has not been sent yet."""
        if not self.is_playing or self._index is None:
            return TickResult.IDLE

        now = self._now()
        elapsed = self._playback.elapsed_ms(now)

        if self._index.is_finished(elapsed, self._config.end_tolerance_ms):
            if self._playback.loop:
                self._restart_loop(now)
                return TickResult.LOOPED
            return TickResult.FINISHED

        step = self._index.lookup(elapsed)
        dispatched = False
        for session in self._registry.sessions():
            if not self._eligible(session):
                continue
            state = self._session_states.get(session.session_id)
            if state is None:
                # session became ready while playing, it joins at the current step
                state = self._session_states[session.session_id] = self._new_session_state()
                state.last_dispatched_index = step.index
                join = self._join(session, state, self._index.timeline, step, elapsed)
                self._spawn(join, session.session_id)
                dispatched = True
                continue
            if not state.is_playing or state.last_dispatched_index == step.index:
                continue
            state.last_dispatched_index = step.index
            self._spawn(session.dispatch(step), session.session_id)
            dispatched = True
        return TickResult.DISPATCHED if dispatched else TickResult.UNCHANGED

    async def _join(
        self,
        session: DeviceSession,
        state: SessionPlaybackState,
        timeline: Timeline,
        step: TimelineStep,
        elapsed: float,
    ) -> None:
        try:
            await session.start_playback(
                timeline, elapsed, self._playback.playback_rate, self._playback.loop
            )
        except Exception as e:
            logger.warning(f"Session {session.session_id} failed to join playback: {e}")
            state.is_playing = False
            self._publish_session_error(session.session_id, "Failed to start playback", e)
            return
        logger.info(f"Session {session.session_id} joined playback at {elapsed:.0f}ms")
        await session.dispatch(step)

    def _restart_loop(self, now: float) -> None:
        self._playback.start_epoch_ms = now
        self._loop_count += 1
        for session_id, state in self._session_states.items():
            state.start_epoch_ms = now
            state.reset_dispatch()
            session = self._registry.get(session_id)
            if session is not None and state.is_playing:
                self._spawn(session.on_loop(), session_id)
        logger.debug(f"Timeline looped ({self._loop_count})")
        self._registry.hub.publish(PlaybackLoopedEvent(iteration=self._loop_count))

    def _spawn(self, coro, session_id: str) -> None:
        task = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(partial(self._on_task_done, session_id))

    def _on_task_done(self, session_id: str, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        logger.warning(f"Dispatch to {session_id} failed: {error}")
        self._registry.hub.publish(
            CommandDispatchErrorEvent(session_id=session_id, message=str(error))
        )

    async def _run(self) -> None:
        interval_s = self._config.tick_interval_ms / 1000
        while True:
            try:
                result = self.tick()
            except Exception as e:
                logger.error(f"Error in playback tick: {e}")
                result = TickResult.UNCHANGED
            if result == TickResult.FINISHED:
                logger.info("Reached the end of the timeline")
                await self._cancel_inflight()
                await self._halt_sessions()
                self._set_state(SchedulerState.STOPPED)
                return
            await asyncio.sleep(interval_s)

    async def sync_time(self, time_ms: float, filter: Optional[float] = None) -> bool:
        """Re-anchor playback to ``time_ms`` without re-sending the current step.

        Sessions that support gradual correction receive ``(time_ms, filter)``.

        Returns:
            False if nothing is playing.
        """
        if not self.is_playing:
            return False
        start_epoch = self._now() - time_ms / self._playback.playback_rate
        self._playback.start_epoch_ms = start_epoch
        for state in self._session_states.values():
            state.start_epoch_ms = start_epoch

        sessions = [
            s
            for s in self._registry.sessions()
            if s.is_connected and self._session_states.get(s.session_id) is not None
        ]
        results = await asyncio.gather(
            *(s.sync_time(time_ms, filter) for s in sessions), return_exceptions=True
        )
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.warning(f"Time sync of {session.session_id} failed: {result}")
                self._publish_session_error(session.session_id, "Time sync failed", result)
        return True

    async def stop(self) -> None:
        """Stop playback and bring every connected device to a safe stop.

        The tick task is cancelled before any stop command goes out.
        """
        task, self._tick_task = self._tick_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._cancel_inflight()
        await self._halt_sessions()
        self._set_state(SchedulerState.IDLE)

    async def _cancel_inflight(self) -> None:
        tasks = list(self._inflight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _halt_sessions(self) -> None:
        self._playback.is_playing = False
        self._session_states.clear()
        sessions = [s for s in self._registry.sessions() if s.is_connected]
        results = await asyncio.gather(
            *(s.stop_playback() for s in sessions), return_exceptions=True
        )
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to stop session {session.session_id}: {result}")
                self._publish_session_error(session.session_id, "Failed to stop playback", result)

    def _publish_session_error(self, session_id: str, message: str, error: Exception) -> None:
        self._registry.hub.publish(
            SessionErrorEvent(
                session_id=session_id,
                message=f"{message}: {error}",
                error_type=type(error).__name__,
            )
        )

    def __repr__(self) -> str:
        return f"PlaybackScheduler(state={self._state.value}, sessions={len(self._registry)})"

