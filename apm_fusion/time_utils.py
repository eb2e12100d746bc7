"""Time range helpers for relative (``now-15m``) and absolute bounds."""

import logging
import re
from datetime import datetime, timedelta, timezone

from apm_fusion.schema import TimeWindow

logger = logging.getLogger(__name__)

_RELATIVE_PATTERN = re.compile(r"^now(?:-(\d+)([smhdwMy]))?$")

_UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 7 * 86400,
    "M": 30 * 86400,
    "y": 365 * 86400,
}


def get_time_in_seconds(value: datetime) -> int:
    """Unix timestamp in whole seconds, truncating sub-second precision."""
    return int(value.timestamp())


def parse_time_expression(expression: str, now: datetime | None = None) -> datetime:
    """Parse ``now``, ``now-<n><unit>`` or an ISO-8601 timestamp.

    Unparseable input falls back to ``now`` with a warning.
    """
    now = now or datetime.now(timezone.utc)
    text = (expression or "").strip()

    match = _RELATIVE_PATTERN.match(text)
    if match:
        amount, unit = match.groups()
        if amount is None:
            return now
        return now - timedelta(seconds=int(amount) * _UNIT_SECONDS[unit])

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Could not parse time expression '{expression}', using now")
        return now
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_time_range(
    time_from: str, time_to: str, now: datetime | None = None
) -> TimeWindow:
    """Resolve a ``from``/``to`` pair into a TimeWindow.

    Both bounds share one ``now`` so relative expressions stay consistent.
    A range whose start lands after its end collapses to the end instant.
    """
    now = now or datetime.now(timezone.utc)
    start = parse_time_expression(time_from, now)
    end = parse_time_expression(time_to, now)
    if start > end:
        logger.warning(f"Time range start {start} is after end {end}; collapsing")
        start = end
    return TimeWindow(start=start, end=end)
