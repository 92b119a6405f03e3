"""Turn a schedule, the anchor and a catch-up horizon into digest windows."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import structlog

from channeldigest.models.domain import Window
from channeldigest.services.schedule import Schedule

log = structlog.get_logger(__name__)


def window_min_start(now: datetime, catchup: timedelta, anchor: datetime | None) -> datetime:
    """Earliest start a window may have: the anchor when it lies inside the catch-up horizon."""
    min_start = now - catchup
    if anchor is not None and min_start < anchor < now:
        return anchor
    return min_start


def build_windows(
    schedule: Schedule,
    now: datetime,
    catchup: timedelta,
    anchor: datetime | None = None,
) -> list[Window]:
    """
    Compute the half-open windows that still need a digest.

    Args:
        schedule: Validated digest schedule
        now: Current time (timezone-aware)
        catchup: How far back missed send times are recovered
        anchor: End of the last successfully processed window, if any

    Returns:
        Strictly increasing, non-overlapping UTC windows
    """
    min_start = window_min_start(now, catchup, anchor)
    times = schedule.times_between(min_start, now)
    if not times:
        return []

    if anchor is not None and anchor >= min_start:
        prev = anchor
    else:
        previous = schedule.previous_time_before(min_start)
        prev = previous if previous is not None and previous >= min_start else min_start

    windows: list[Window] = []
    for scheduled in times:
        if scheduled <= prev:
            continue

        start = max(prev, min_start)
        if start < scheduled:
            windows.append(Window(start=start.astimezone(UTC), end=scheduled.astimezone(UTC)))
        prev = scheduled

    log.debug(
        "windows_built",
        count=len(windows),
        min_start=min_start.isoformat(),
        anchor=anchor.isoformat() if anchor else None,
    )
    return windows
