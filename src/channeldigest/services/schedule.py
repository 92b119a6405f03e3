"""Digest schedule evaluation: weekday/weekend send times in a named timezone."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from pydantic import BaseModel, Field, ValidationError

from channeldigest.errors import InvalidScheduleError

log = structlog.get_logger(__name__)

SETTING_DIGEST_SCHEDULE = "digest_schedule"
SETTING_DIGEST_SCHEDULE_ANCHOR = "digest_schedule_anchor"

MINUTES_PER_HOUR = 60
PREVIOUS_SEARCH_DAYS = 8

TIMEZONE_ALIASES = {
    "Asia/Nicosia": "Europe/Nicosia",
}


class HourlyRange(BaseModel):
    """Inclusive on-the-hour range within a single day."""

    start: str
    end: str


class DaySchedule(BaseModel):
    times: list[str] = Field(default_factory=list)
    hourly: HourlyRange | None = None

    def is_empty(self) -> bool:
        return not self.times and self.hourly is None

    def validate_entries(self, label: str) -> None:
        for value in self.times:
            try:
                parse_time_hm(value)
            except InvalidScheduleError as exc:
                raise InvalidScheduleError(f"invalid {label} time {value!r}: {exc}") from exc

        if self.hourly is not None:
            start = _parse_labeled(self.hourly.start, f"{label} hourly start")
            end = _parse_labeled(self.hourly.end, f"{label} hourly end")
            if start > end:
                raise InvalidScheduleError(f"{label}: hourly range crosses midnight")

    def normalized(self) -> "DaySchedule":
        """Copy with every time written as ``HH:MM``; duplicate times collapse."""
        hourly = None
        if self.hourly is not None:
            hourly = HourlyRange(start=normalize_time_hm(self.hourly.start), end=normalize_time_hm(self.hourly.end))
        return DaySchedule(times=sorted({normalize_time_hm(value) for value in self.times}), hourly=hourly)

    def minutes(self) -> list[int]:
        """Sorted, deduplicated minute-of-day offsets for this day."""
        if self.is_empty():
            return []

        found = {parse_time_hm(value) for value in self.times}

        if self.hourly is not None:
            start = parse_time_hm(self.hourly.start)
            end = parse_time_hm(self.hourly.end)
            if start > end:
                raise InvalidScheduleError("hourly range crosses midnight")

            hour = start // MINUTES_PER_HOUR
            if start % MINUTES_PER_HOUR != 0:
                hour += 1
            while hour * MINUTES_PER_HOUR <= end:
                found.add(hour * MINUTES_PER_HOUR)
                hour += 1

        return sorted(found)


class Schedule(BaseModel):
    """
    Digest send times for weekdays and weekends.

    Serialized in the settings table as::

        {"timezone": "Europe/Nicosia",
         "weekdays": {"times": ["09:00"], "hourly": {"start": "10:00", "end": "18:00"}},
         "weekends": {"times": ["10:00"]}}
    """

    timezone: str = ""
    weekdays: DaySchedule = Field(default_factory=DaySchedule)
    weekends: DaySchedule = Field(default_factory=DaySchedule)

    def is_empty(self) -> bool:
        return self.weekdays.is_empty() and self.weekends.is_empty()

    def location(self) -> tzinfo:
        """Resolve the schedule timezone; an empty timezone means UTC."""
        name = normalize_timezone(self.timezone)
        if not name:
            return UTC
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise InvalidScheduleError(f"invalid timezone: {self.timezone!r}") from exc

    def normalized(self) -> "Schedule":
        """Canonical form for storage: IANA timezone name and ``HH:MM`` times."""
        return Schedule(
            timezone=normalize_timezone(self.timezone),
            weekdays=self.weekdays.normalized(),
            weekends=self.weekends.normalized(),
        )

    def validate_schedule(self) -> None:
        """Raise :class:`InvalidScheduleError` when any field is malformed."""
        self.location()
        self.weekdays.validate_entries("weekdays")
        self.weekends.validate_entries("weekends")

    def day_schedule(self, day: date) -> DaySchedule:
        # Saturday=5, Sunday=6
        if day.weekday() >= 5:
            return self.weekends
        return self.weekdays

    def times_between(self, start: datetime, end: datetime) -> list[datetime]:
        """
        Scheduled instants within ``[start, end]`` (inclusive).

        Args:
            start: Lower bound (timezone-aware)
            end: Upper bound (timezone-aware)

        Returns:
            Sorted UTC datetimes. Wall-clock times that fall into a DST gap
            are skipped; ambiguous times are emitted once (first occurrence).
        """
        if end < start:
            return []

        zone = self.location()
        start_local = start.astimezone(zone)
        end_local = end.astimezone(zone)

        results: list[datetime] = []
        day = start_local.date()
        while day <= end_local.date():
            for minute in self.day_schedule(day).minutes():
                instant = _local_instant(day, minute, zone)
                if instant is None:
                    continue
                if instant < start or instant > end:
                    continue
                results.append(instant)
            day += timedelta(days=1)

        results.sort()
        return results

    def previous_time_before(self, before: datetime) -> datetime | None:
        """Latest scheduled instant strictly before ``before``, searching up to 8 days back."""
        zone = self.location()
        start_day = before.astimezone(zone).date()

        for offset in range(PREVIOUS_SEARCH_DAYS):
            day = start_day - timedelta(days=offset)
            for minute in reversed(self.day_schedule(day).minutes()):
                instant = _local_instant(day, minute, zone)
                if instant is not None and instant < before:
                    return instant

        return None


def normalize_timezone(value: str | None) -> str:
    """Map known aliases to canonical IANA names."""
    value = (value or "").strip()
    return TIMEZONE_ALIASES.get(value, value)


def normalize_time_hm(value: str) -> str:
    """Accept ``H:MM`` or ``HH:MM`` and return ``HH:MM``."""
    minutes = parse_time_hm(value)
    return f"{minutes // MINUTES_PER_HOUR:02d}:{minutes % MINUTES_PER_HOUR:02d}"


def parse_time_hm(value: str) -> int:
    """Parse ``H:MM``/``HH:MM`` into minutes after midnight."""
    text = (value or "").strip()
    parts = text.split(":")
    if not text or len(parts) != 2 or len(parts[1]) != 2:
        raise InvalidScheduleError("time must be HH:MM")

    hour_text, minute_text = parts
    if not hour_text.isdigit() or len(hour_text) > 2:
        raise InvalidScheduleError("invalid hour")
    if not minute_text.isdigit():
        raise InvalidScheduleError("invalid minute")

    hour = int(hour_text)
    minute = int(minute_text)
    if hour > 23:
        raise InvalidScheduleError("hour out of range")
    if minute >= MINUTES_PER_HOUR:
        raise InvalidScheduleError("invalid minute")

    return hour * MINUTES_PER_HOUR + minute


def parse_schedule(raw: str | bytes | dict[str, Any]) -> Schedule:
    """Decode and validate the JSON form stored in the settings table (text or decoded object)."""
    try:
        if isinstance(raw, dict):
            schedule = Schedule.model_validate(raw)
        else:
            schedule = Schedule.model_validate_json(raw)
    except ValidationError as exc:
        raise InvalidScheduleError(f"invalid schedule payload: {exc.error_count()} error(s)") from exc

    schedule.validate_schedule()
    return schedule


def _parse_labeled(value: str, label: str) -> int:
    try:
        return parse_time_hm(value)
    except InvalidScheduleError as exc:
        raise InvalidScheduleError(f"invalid {label} {value!r}: {exc}") from exc


def _local_instant(day: date, minute: int, zone: tzinfo) -> datetime | None:
    """UTC instant for a wall-clock time, or ``None`` when it does not exist in ``zone``."""
    wall = datetime(day.year, day.month, day.day, minute // MINUTES_PER_HOUR, minute % MINUTES_PER_HOUR)
    local = wall.replace(tzinfo=zone, fold=0)
    instant = local.astimezone(UTC)
    if instant.astimezone(zone).replace(tzinfo=None) != wall:
        log.debug("schedule_time_skipped_dst_gap", day=day.isoformat(), minute=minute)
        return None
    return instant
