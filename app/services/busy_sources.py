"""Busy-interval sources and their concurrent aggregation.

A source reports the [start, end) ranges during which a page cannot take
bookings. Sources fail softly: an unreachable calendar contributes nothing and
is only visible in the logs.
"""
import asyncio
import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import UpstreamUnavailable
from app.models.booking import ACTIVE_STATUSES, Booking
from app.models.booking_page import BookingPage
from app.services.calendar_service import GoogleCalendarClient
from app.services.intervals import BusyInterval, as_aware_utc, as_naive_utc

logger = logging.getLogger(__name__)


class BusySource(Protocol):
    name: str

    async def list_busy(self, range_start: datetime, range_end: datetime) -> list[BusyInterval]:
        ...


async def active_booking_intervals(
    session: AsyncSession,
    page_id: int,
    range_start: datetime,
    range_end: datetime,
    source: str = "bookings",
) -> list[BusyInterval]:
    """Pending/confirmed bookings of the page whose window overlaps [range_start, range_end)."""
    result = await session.execute(
        select(Booking.start_time, Booking.end_time).where(
            Booking.booking_page_id == page_id,
            Booking.status.in_(ACTIVE_STATUSES),
            Booking.start_time < as_naive_utc(range_end),
            Booking.end_time > as_naive_utc(range_start),
        )
    )
    return [
        BusyInterval(start=as_aware_utc(start), end=as_aware_utc(end), source=source)
        for start, end in result.all()
    ]


class BookingStoreBusySource:
    """The page's own active bookings."""

    name = "bookings"

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], page_id: int) -> None:
        self._session_maker = session_maker
        self._page_id = page_id

    async def list_busy(self, range_start: datetime, range_end: datetime) -> list[BusyInterval]:
        async with self._session_maker() as session:
            return await active_booking_intervals(session, self._page_id, range_start, range_end, self.name)


class GoogleCalendarBusySource:
    name = "google_calendar"

    def __init__(self, client: GoogleCalendarClient, page: BookingPage) -> None:
        self._client = client
        self._page = page

    async def list_busy(self, range_start: datetime, range_end: datetime) -> list[BusyInterval]:
        try:
            return await self._client.list_busy_times(self._page, range_start, range_end)
        except UpstreamUnavailable as e:
            logger.warning("Google Calendar unavailable for page %s: %s", self._page.id, e.detail)
            return []


def build_busy_sources(
    page: BookingPage,
    session_maker: async_sessionmaker[AsyncSession],
    calendar_client: GoogleCalendarClient | None = None,
) -> list[BusySource]:
    sources: list[BusySource] = [BookingStoreBusySource(session_maker, page.id)]
    calendar_client = calendar_client or GoogleCalendarClient()
    if calendar_client.is_configured(page):
        sources.append(GoogleCalendarBusySource(calendar_client, page))
    return sources


async def _query_source(
    source: BusySource, range_start: datetime, range_end: datetime, timeout: float
) -> list[BusyInterval]:
    try:
        return await asyncio.wait_for(source.list_busy(range_start, range_end), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Busy source %s timed out after %.1fs; treating as free", source.name, timeout)
    except Exception as e:
        logger.warning("Busy source %s failed (%s: %s); treating as free", source.name, type(e).__name__, e)
    return []


async def collect_busy_intervals(
    sources: Sequence[BusySource],
    range_start: datetime,
    range_end: datetime,
    timeout: float,
) -> list[BusyInterval]:
    """Query every source concurrently, each under its own timeout, and merge the results."""
    results = await asyncio.gather(
        *(_query_source(source, range_start, range_end, timeout) for source in sources)
    )
    merged = [interval for intervals in results for interval in intervals]
    merged.sort(key=lambda b: (b.start, b.end))
    return merged
