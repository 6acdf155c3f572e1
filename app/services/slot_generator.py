"""Turns a page's business hours and busy intervals into the bookable slots of one day.

Everything here is pure: no database, no network. ``now`` is always passed in so
the same inputs produce the same slots.
"""
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.core.errors import ValidationError
from app.models.booking_page import WEEKDAYS, BookingPage
from app.services.intervals import BusyInterval, as_aware_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DaySchedule:
    enabled: bool
    start: time
    end: time


CLOSED = DaySchedule(enabled=False, start=time(0, 0), end=time(0, 0))


@dataclass(frozen=True)
class Slot:
    start: datetime  # aware UTC
    end: datetime  # aware UTC
    is_available: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_time": self.start.isoformat(),
            "end_time": self.end.isoformat(),
            "is_available": self.is_available,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Slot":
        return cls(
            start=as_aware_utc(datetime.fromisoformat(data["start_time"])),
            end=as_aware_utc(datetime.fromisoformat(data["end_time"])),
            is_available=bool(data["is_available"]),
        )


def _parse_clock(value: Any, day_name: str, field: str) -> time:
    try:
        return datetime.strptime(str(value), "%H:%M").time()
    except ValueError:
        raise ValidationError(f"{day_name}.{field} must be HH:MM, got {value!r}") from None


def parse_day_schedule(day_name: str, raw: dict[str, Any] | None, strict: bool = False) -> DaySchedule:
    """Parse one ``{enabled, start, end}`` entry.

    In strict mode (saving page settings) malformed times and inverted or empty
    windows raise ValidationError. Otherwise a malformed day is treated as closed
    and an inverted window simply produces no slots.
    """
    if not raw or not raw.get("enabled"):
        return CLOSED
    try:
        start = _parse_clock(raw.get("start"), day_name, "start")
        end = _parse_clock(raw.get("end"), day_name, "end")
    except ValidationError:
        if strict:
            raise
        logger.warning("Ignoring malformed business hours for %s: %r", day_name, raw)
        return CLOSED
    if strict and end <= start:
        raise ValidationError(f"{day_name} closes at or before it opens ({raw.get('start')}-{raw.get('end')})")
    return DaySchedule(enabled=True, start=start, end=end)


def parse_business_hours(raw: dict[str, Any] | None, strict: bool = False) -> dict[str, DaySchedule]:
    raw = raw or {}
    if strict:
        unknown = set(raw) - set(WEEKDAYS)
        if unknown:
            raise ValidationError(f"Unknown weekday(s) in business_hours: {', '.join(sorted(unknown))}")
    return {day: parse_day_schedule(day, raw.get(day), strict=strict) for day in WEEKDAYS}


def page_zone(page: BookingPage) -> ZoneInfo:
    try:
        return ZoneInfo(page.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone {page.timezone!r}") from None


def local_date_of(page: BookingPage, instant: datetime) -> date:
    """Calendar date of ``instant`` in the page's timezone."""
    return as_aware_utc(instant).astimezone(page_zone(page)).date()


def day_bounds(page: BookingPage, day: date) -> tuple[datetime, datetime]:
    """UTC [start, end) of ``day`` in the page's timezone."""
    tz = page_zone(page)
    start = datetime.combine(day, time(0, 0), tzinfo=tz).astimezone(UTC)
    end = datetime.combine(day + timedelta(days=1), time(0, 0), tzinfo=tz).astimezone(UTC)
    return start, end


def booking_window_open(page: BookingPage, day: date, now: datetime) -> bool:
    """Customers may book from today up to ``max_days_advance`` days ahead (page timezone)."""
    today = local_date_of(page, now)
    return today <= day <= today + timedelta(days=page.max_days_advance)


def slot_windows(page: BookingPage, day: date) -> Iterator[tuple[datetime, datetime]]:
    """Yield the UTC [start, end) of every slot the business hours allow on ``day``."""
    schedule = parse_business_hours(page.business_hours)[WEEKDAYS[day.weekday()]]
    if not schedule.enabled:
        return
    if page.slot_duration_minutes <= 0 or page.buffer_time_minutes < 0:
        logger.warning("Page %s has invalid slot settings, generating no slots", page.id)
        return
    tz = page_zone(page)
    day_start = datetime.combine(day, schedule.start, tzinfo=tz).astimezone(UTC)
    day_end = datetime.combine(day, schedule.end, tzinfo=tz).astimezone(UTC)
    duration = timedelta(minutes=page.slot_duration_minutes)
    step = duration + timedelta(minutes=page.buffer_time_minutes)
    cursor = day_start
    # A trailing remainder shorter than one slot is left unused
    while cursor + duration <= day_end:
        yield cursor, cursor + duration
        cursor += step


def generate_day_slots(
    page: BookingPage,
    day: date,
    busy: Iterable[BusyInterval],
    now: datetime,
) -> list[Slot]:
    """Every slot of ``day`` in chronological order.

    A slot is unavailable when it overlaps a busy interval, starts in the past,
    or starts within ``booking_notice_hours`` of ``now``.
    """
    busy = list(busy)
    now = as_aware_utc(now)
    earliest_start = now + timedelta(hours=max(page.booking_notice_hours, 0))
    slots: list[Slot] = []
    for start, end in slot_windows(page, day):
        taken = any(b.overlaps(start, end) for b in busy)
        too_soon = start < now or start < earliest_start
        slots.append(Slot(start=start, end=end, is_available=not (taken or too_soon)))
    return slots


def is_bookable_window(page: BookingPage, start: datetime, end: datetime) -> bool:
    """True when [start, end) is exactly one of the slots the page offers on that day."""
    start = as_aware_utc(start)
    end = as_aware_utc(end)
    return (start, end) in set(slot_windows(page, local_date_of(page, start)))
