"""Shared test fixtures and helpers."""

import asyncio
import os
from datetime import UTC, date, datetime, time, timedelta

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
import pytest_asyncio

from app.core.db import init_db, make_engine, make_session_maker
from app.models.booking import Booking, BookingStatus
from app.models.booking_page import BookingPage
from app.services.availability_cache import AvailabilityService, InMemoryAvailabilityCache
from app.services.booking_events import BookingEventDispatcher
from app.services.busy_sources import BookingStoreBusySource
from app.services.intervals import BusyInterval, as_naive_utc
from app.services.reservation_guard import CustomerInfo, ReservationGuard

# Monday morning; DAY is the Tuesday after
NOW = datetime(2026, 3, 2, 8, 30, tzinfo=UTC)
DAY = date(2026, 3, 3)


class Clock:
    """Settable clock for TTL and notice tests."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=UTC)


def make_page(**overrides) -> BookingPage:
    """Unsaved page: weekdays 09:00-17:00 UTC, 60 min slots with a 15 min buffer."""
    fields = dict(
        org_id="org-1",
        slug="acme-tax",
        business_name="Acme Tax",
        business_email="owner@acme.test",
        timezone="UTC",
        slot_duration_minutes=60,
        buffer_time_minutes=15,
        booking_notice_hours=2,
        max_days_advance=60,
    )
    fields.update(overrides)
    return BookingPage(**fields)


def make_customer(**overrides) -> CustomerInfo:
    fields = dict(name="Jane Citizen", phone="0412345678", email="jane@example.com")
    fields.update(overrides)
    return CustomerInfo(**fields)


async def save_page(session_maker, page: BookingPage) -> BookingPage:
    async with session_maker() as session:
        session.add(page)
        await session.commit()
        await session.refresh(page)
    return page


async def add_booking(
    session_maker,
    page: BookingPage,
    start: datetime,
    end: datetime,
    status: BookingStatus = BookingStatus.CONFIRMED,
) -> Booking:
    booking = Booking(
        booking_page_id=page.id,
        org_id=page.org_id,
        customer_name="Existing Customer",
        customer_phone="0400000000",
        start_time=as_naive_utc(start),
        end_time=as_naive_utc(end),
        duration_minutes=int((end - start).total_seconds() // 60),
        status=status.value,
    )
    async with session_maker() as session:
        session.add(booking)
        await session.commit()
        await session.refresh(booking)
    return booking


class StaticBusySource:
    def __init__(self, intervals: list[BusyInterval], name: str = "static") -> None:
        self.name = name
        self.intervals = intervals
        self.calls = 0

    async def list_busy(self, range_start, range_end):
        self.calls += 1
        return [b for b in self.intervals if b.overlaps(range_start, range_end)]


class FailingBusySource:
    name = "failing"

    async def list_busy(self, range_start, range_end):
        raise ConnectionError("calendar unreachable")


class SlowBusySource:
    name = "slow"

    def __init__(self, delay: float = 5.0) -> None:
        self.delay = delay

    async def list_busy(self, range_start, range_end):
        await asyncio.sleep(self.delay)
        return [BusyInterval(range_start, range_end, self.name)]


@pytest.fixture
def clock():
    return Clock()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return make_session_maker(engine)


@pytest_asyncio.fixture
async def page(session_maker):
    return await save_page(session_maker, make_page())


@pytest.fixture
def extra_sources():
    """Busy sources consulted alongside the page's own bookings."""
    return []


@pytest.fixture
def sources_factory(session_maker, extra_sources):
    def factory(page):
        return [BookingStoreBusySource(session_maker, page.id), *extra_sources]

    return factory


@pytest.fixture
def availability(sources_factory, clock):
    cache = InMemoryAvailabilityCache(timedelta(minutes=60), clock=clock)
    return AvailabilityService(cache, sources_factory, source_timeout=1.0, clock=clock)


@pytest.fixture
def dispatcher():
    return BookingEventDispatcher()


@pytest.fixture
def guard(session_maker, availability, dispatcher, sources_factory, clock):
    return ReservationGuard(
        session_maker,
        availability,
        dispatcher,
        sources_factory,
        source_timeout=1.0,
        clock=clock,
    )
