from dataclasses import dataclass
from datetime import UTC, datetime


def as_aware_utc(dt: datetime) -> datetime:
    """Naive datetimes coming out of the database are UTC; tag them. Aware ones are converted."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def as_naive_utc(dt: datetime) -> datetime:
    """Convert to naive UTC for TIMESTAMP WITHOUT TIME ZONE columns."""
    if dt.tzinfo is not None:
        return dt.astimezone(UTC).replace(tzinfo=None)
    return dt


def utc_now() -> datetime:
    return datetime.now(UTC)


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open [start, end) overlap: touching intervals do not overlap."""
    return start_a < end_b and end_a > start_b


@dataclass(frozen=True)
class BusyInterval:
    """A [start, end) range during which the business cannot take a booking."""

    start: datetime
    end: datetime
    source: str

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return overlaps(start, end, self.start, self.end)
