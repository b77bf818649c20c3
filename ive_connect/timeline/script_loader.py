"""Loading of funscript-style action scripts.

Scripts arrive either as JSON (``{"actions": [{"at": 0, "pos": 50}, ...]}``) or as
two-column CSV (``at,pos`` with an optional header row), inline or by URL. Inversion
and sorting happen exactly once, here, so the timeline index can stay read-only.
"""

import csv
import io
import json
import logging
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, model_validator

from ive_connect.config import REQUEST_TIMEOUT_S
from ive_connect.exceptions import TimelineError
from ive_connect.timeline.timeline import Timeline

logger = logging.getLogger(__name__)


class ScriptData(BaseModel):
    """Where a script comes from: a URL or inline content"""

    url: Optional[str] = None
    content: Optional[str | dict[str, Any]] = None

    @model_validator(mode="after")
    def _require_source(self) -> "ScriptData":
        if self.url is None and self.content is None:
            raise ValueError("Either url or content must be given")
        return self


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_valid_funscript(payload: Any) -> bool:
    """Check that ``payload`` has an ``actions`` list of ``{at: number, pos: number}``."""
    if not isinstance(payload, dict):
        return False
    actions = payload.get("actions")
    if not isinstance(actions, list):
        return False
    return all(
        isinstance(action, dict) and _is_number(action.get("at")) and _is_number(action.get("pos"))
        for action in actions
    )


def parse_csv(text: str) -> dict[str, Any]:
    """Convert ``at,pos`` CSV text into a funscript payload.

    A first row whose first column is not numeric is treated as a header. Times are
    rounded, positions rounded and clamped to 0..100. Rows that do not parse are skipped.
    """
    actions: list[dict[str, int]] = []
    rows = [row for row in csv.reader(io.StringIO(text)) if row and any(c.strip() for c in row)]
    for row_number, row in enumerate(rows):
        if len(row) < 2:
            continue
        try:
            at = float(row[0])
            pos = float(row[1])
        except ValueError:
            if row_number == 0:
                # header row
                continue
            logger.debug(f"Skipping malformed CSV row {row_number}: {row}")
            continue
        actions.append({"at": round(at), "pos": min(100, max(0, round(pos)))})
    return {"actions": actions, "inverted": False}


def _normalize(payload: dict[str, Any], invert: bool, loaded_from: Optional[str]) -> Timeline:
    if not is_valid_funscript(payload):
        raise TimelineError("Invalid funscript: expected an 'actions' list of {at, pos}")

    actions = [
        {"at": max(0, round(a["at"])), "pos": min(100, max(0, round(a["pos"])))}
        for a in payload["actions"]
    ]
    inverted = bool(payload.get("inverted", False))
    if invert:
        actions = [{"at": a["at"], "pos": 100 - a["pos"]} for a in actions]
        inverted = not inverted
    actions.sort(key=lambda a: a["at"])

    return Timeline.from_script(
        {"actions": actions, "inverted": inverted, "loadedFrom": loaded_from}
    )


def parse_script_text(text: str, prefer_csv: bool = False) -> dict[str, Any]:
    """Parse script text as JSON, falling back to CSV."""
    if prefer_csv:
        return parse_csv(text)
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        logger.debug("Script is not JSON, trying CSV")
        return parse_csv(text)
    return payload


async def fetch_script(url: str, client: Optional[httpx.AsyncClient] = None) -> dict[str, Any]:
    """Download a script and parse it according to its extension."""
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_S) as owned_client:
                response = await owned_client.get(url)
        else:
            response = await client.get(url)
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise TimelineError(f"Failed to fetch script from {url}: {e}") from e

    is_csv = urlparse(url).path.lower().endswith(".csv")
    return parse_script_text(response.text, prefer_csv=is_csv)


async def load_script(
    data: ScriptData, invert: bool = False, client: Optional[httpx.AsyncClient] = None
) -> Timeline:
    """Load a script into a timeline.

    Args:
        data: URL or inline content (JSON/CSV text or an already parsed payload).
        invert: Mirror every position (``100 - pos``) and toggle ``inverted``.
        client: Optional HTTP client used for URL downloads.

    Raises:
        TimelineError: If the script cannot be fetched, parsed or has no actions.
    """
    if data.content is not None:
        content = data.content
        payload = parse_script_text(content) if isinstance(content, str) else content
        loaded_from = data.url or "content"
    elif data.url is not None:
        payload = await fetch_script(data.url, client)
        loaded_from = data.url
    else:
        raise TimelineError("Script has neither url nor content")

    timeline = _normalize(payload, invert, loaded_from)
    logger.info(f"Loaded script with {len(timeline)} actions from {loaded_from}")
    return timeline
