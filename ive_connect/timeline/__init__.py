from ive_connect.timeline.script_loader import (
    ScriptData,
    is_valid_funscript,
    load_script,
    parse_csv,
)
from ive_connect.timeline.timeline import Action, Timeline, TimelineIndex, TimelineStep

__all__ = [
    "Action",
    "ScriptData",
    "Timeline",
    "TimelineIndex",
    "TimelineStep",
    "is_valid_funscript",
    "load_script",
    "parse_csv",
]
