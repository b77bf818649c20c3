"""Timeline of timestamped position samples and the index that resolves it.

A timeline is built once when a script is loaded and replaced wholesale on the
next load. The index answers "which action is the device moving toward at this
elapsed time" in O(log n) and never mutates the timeline.
"""

import bisect
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from ive_connect.config import DEFAULT_TRAVEL_MS, MIN_TRAVEL_MS
from ive_connect.exceptions import TimelineError


class Action(BaseModel):
    """A single target position at a point in time"""

    model_config = {"frozen": True}

    at: int = Field(..., ge=0, description="Milliseconds from the start of the script")
    pos: int = Field(..., ge=0, le=100, description="Target position, 0 is bottom")


class Timeline(BaseModel):
    """Immutable, time-ordered sequence of actions"""

    model_config = {"frozen": True, "populate_by_name": True}

    actions: tuple[Action, ...] = ()
    inverted: bool = False
    loaded_from: Optional[str] = Field(default=None, alias="loadedFrom")

    @model_validator(mode="after")
    def _check_order(self) -> "Timeline":
        for previous, current in zip(self.actions, self.actions[1:]):
            if current.at < previous.at:
                raise ValueError(
                    f"actions must be ascending by time, got {current.at} after {previous.at}"
                )
        return self

    @classmethod
    def from_script(cls, payload: Mapping[str, Any]) -> "Timeline":
        """Build a timeline from a loaded script payload.

        The payload has the shape ``{"actions": [{"at": .., "pos": ..}], "inverted": ..,
        "loadedFrom": ..}``. Sorting and inversion are expected to be applied already.

        Raises:
            TimelineError: If the payload is malformed or has no actions.
        """
        try:
            timeline = cls.model_validate(payload)
        except ValidationError as e:
            raise TimelineError(f"Invalid script: {e}") from e
        if timeline.is_empty:
            raise TimelineError("Script has no actions")
        return timeline

    @property
    def is_empty(self) -> bool:
        return not self.actions

    @property
    def duration_ms(self) -> int:
        """Time of the last action, 0 for an empty timeline."""
        return self.actions[-1].at if self.actions else 0

    def __len__(self) -> int:
        return len(self.actions)


@dataclass(frozen=True)
class TimelineStep:
    """Result of a timeline lookup"""

    index: int
    action: Action
    previous_action: Optional[Action]
    travel_duration_ms: int

    @property
    def position(self) -> int:
        return self.action.pos

    @property
    def previous_position(self) -> int:
        # the device is assumed to rest at the bottom before the first action
        return self.previous_action.pos if self.previous_action is not None else 0


class TimelineIndex:
    """Binary-search index over a timeline.

    Args:
        timeline: The timeline to index, shared read-only.
        min_travel_ms: Lower bound for the travel duration between two actions.
        default_travel_ms: Travel duration used for the first action.
    """

    def __init__(
        self,
        timeline: Timeline,
        min_travel_ms: int = MIN_TRAVEL_MS,
        default_travel_ms: int = DEFAULT_TRAVEL_MS,
    ):
        self._timeline = timeline
        self._times = [action.at for action in timeline.actions]
        self._min_travel_ms = min_travel_ms
        self._default_travel_ms = default_travel_ms

    @property
    def timeline(self) -> Timeline:
        return self._timeline

    @property
    def last_index(self) -> int:
        return len(self._times) - 1

    def lookup(self, elapsed_ms: float) -> TimelineStep:
        """Resolve the action the device should be moving toward at ``elapsed_ms``.

        Before the first action the first action is returned, at or after the last
        action the last one. In between, the action following the latest passed action
        is returned.

        Raises:
            TimelineError: If the timeline is empty.
        """
        if not self._times:
            raise TimelineError("Cannot look up an empty timeline")

        last = self.last_index
        if elapsed_ms < self._times[0]:
            index = 0
        elif elapsed_ms >= self._times[last]:
            index = last
        else:
            # greatest i with at <= elapsed, duplicates resolve to the last one
            floor = bisect.bisect_right(self._times, elapsed_ms) - 1
            index = min(floor + 1, last)
        return self._step(index)

    def is_finished(self, elapsed_ms: float, tolerance_ms: float) -> bool:
        """Return True once ``elapsed_ms`` is past the last action plus the tolerance."""
        if not self._times:
            return True
        return elapsed_ms > self._times[-1] + tolerance_ms

    def _step(self, index: int) -> TimelineStep:
        actions = self._timeline.actions
        action = actions[index]
        if index == 0:
            return TimelineStep(
                index=0,
                action=action,
                previous_action=None,
                travel_duration_ms=self._default_travel_ms,
            )
        previous = actions[index - 1]
        return TimelineStep(
            index=index,
            action=action,
            previous_action=previous,
            travel_duration_ms=max(self._min_travel_ms, action.at - previous.at),
        )
