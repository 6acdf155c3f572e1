"""Write path: reserve a slot only if nothing claims its window, and move bookings through their lifecycle.

Two customers racing for the same window must not both win. Within one process
reservations for a page are serialised by an asyncio lock; across processes the
transaction locks the page row, and on PostgreSQL the
``bookings_no_overlap_per_page`` exclusion constraint rejects any overlapping
active booking that still slips through.
"""
import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from weakref import WeakValueDictionary

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.models.booking import ACTIVE_STATUSES, Booking, BookingStatus
from app.models.booking_page import BookingPage
from app.services.availability_cache import AvailabilityService, SourcesFactory
from app.services.booking_events import (
    BOOKING_CANCELLED,
    BOOKING_COMPLETED,
    BOOKING_CONFIRMED,
    BOOKING_CREATED,
    BOOKING_NO_SHOW,
    BookingEvent,
    BookingEventDispatcher,
)
from app.services.busy_sources import active_booking_intervals, collect_busy_intervals
from app.services.intervals import as_aware_utc, as_naive_utc, utc_now
from app.services.slot_generator import booking_window_open, is_bookable_window, local_date_of

logger = logging.getLogger(__name__)

SLOT_TAKEN_MESSAGE = "Time slot is no longer available"
OVERLAP_CONSTRAINT = "bookings_no_overlap_per_page"

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    BookingStatus.PENDING.value: frozenset(
        {BookingStatus.CONFIRMED.value, BookingStatus.CANCELLED.value, BookingStatus.NO_SHOW.value}
    ),
    BookingStatus.CONFIRMED.value: frozenset(
        {BookingStatus.CANCELLED.value, BookingStatus.COMPLETED.value, BookingStatus.NO_SHOW.value}
    ),
}

STATUS_EVENTS: dict[BookingStatus, str] = {
    BookingStatus.CONFIRMED: BOOKING_CONFIRMED,
    BookingStatus.CANCELLED: BOOKING_CANCELLED,
    BookingStatus.COMPLETED: BOOKING_COMPLETED,
    BookingStatus.NO_SHOW: BOOKING_NO_SHOW,
}


def is_overlap_violation(exc: IntegrityError) -> bool:
    """True when the insert was rejected by the per-page overlap exclusion constraint."""
    return OVERLAP_CONSTRAINT in str(exc.orig)


@dataclass
class CustomerInfo:
    name: str
    phone: str
    email: str | None = None
    notes: str | None = None
    service_type: str | None = None
    custom_responses: dict[str, Any] = field(default_factory=dict)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def validate_customer(page: BookingPage, customer: CustomerInfo) -> CustomerInfo:
    name = _clean(customer.name)
    phone = _clean(customer.phone)
    missing = [label for label, value in (("customer_name", name), ("customer_phone", phone)) if not value]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    service_type = _clean(customer.service_type)
    if service_type and page.enabled_services and service_type not in page.enabled_services:
        raise ValidationError(f"Service {service_type!r} is not offered on this page")
    responses = dict(customer.custom_responses or {})
    unanswered = [
        q.get("label", "")
        for q in page.custom_questions or []
        if q.get("required") and not str(responses.get(q.get("label", ""), "")).strip()
    ]
    if unanswered:
        raise ValidationError(f"Missing answers to required questions: {', '.join(unanswered)}")
    return CustomerInfo(
        name=name,
        phone=phone,
        email=_clean(customer.email),
        notes=_clean(customer.notes),
        service_type=service_type,
        custom_responses=responses,
    )


class ReservationGuard:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        availability: AvailabilityService,
        dispatcher: BookingEventDispatcher,
        sources_factory: SourcesFactory,
        source_timeout: float,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_maker = session_maker
        self._availability = availability
        self._dispatcher = dispatcher
        self._sources_factory = sources_factory
        self._source_timeout = source_timeout
        self._clock = clock
        # Entries disappear once no reservation holds or waits on them
        self._page_locks: WeakValueDictionary[int, asyncio.Lock] = WeakValueDictionary()

    def _page_lock(self, page_id: int) -> asyncio.Lock:
        lock = self._page_locks.get(page_id)
        if lock is None:
            lock = asyncio.Lock()
            self._page_locks[page_id] = lock
        return lock

    async def _invalidate_day(self, page: BookingPage, instant: datetime) -> None:
        # The booking change is already committed; a cache store outage must not undo that for the caller
        try:
            await self._availability.invalidate(page.id, local_date_of(page, instant))
        except Exception:
            logger.exception("Cache invalidation failed for page=%s at %s", page.id, instant)

    def _validate_window(self, page: BookingPage, start: datetime, end: datetime, now: datetime) -> None:
        if end <= start:
            raise ValidationError("end_time must be after start_time")
        if not booking_window_open(page, local_date_of(page, start), now):
            raise ValidationError(
                f"Bookings are accepted from today up to {page.max_days_advance} days ahead"
            )
        if not is_bookable_window(page, start, end):
            raise ValidationError("Requested time is not one of this page's bookable slots")
        if start < now + timedelta(hours=max(page.booking_notice_hours, 0)):
            raise ValidationError(
                f"Bookings must be made at least {page.booking_notice_hours} hour(s) in advance"
            )

    async def reserve(
        self,
        page: BookingPage,
        start_time: datetime,
        end_time: datetime,
        customer: CustomerInfo,
    ) -> Booking:
        """Create a booking for [start_time, end_time) or raise ConflictError/ValidationError."""
        now = self._clock()
        start = as_aware_utc(start_time)
        end = as_aware_utc(end_time)
        self._validate_window(page, start, end, now)
        customer = validate_customer(page, customer)

        # Fresh busy data for just this window; cached slot lists are never trusted here
        busy = await collect_busy_intervals(self._sources_factory(page), start, end, self._source_timeout)
        clash = next((b for b in busy if b.overlaps(start, end)), None)
        if clash is not None:
            logger.info("Reservation rejected page=%s %s: busy in %s", page.id, start.isoformat(), clash.source)
            raise ConflictError(SLOT_TAKEN_MESSAGE)

        async with self._page_lock(page.id):
            booking = await self._insert_if_free(page, start, end, customer)

        logger.info(
            "Booking %s created page=%s %s-%s status=%s",
            booking.id,
            page.id,
            start.isoformat(),
            end.isoformat(),
            booking.status,
        )
        await self._invalidate_day(page, start)
        self._dispatcher.emit(BookingEvent(type=BOOKING_CREATED, booking=booking, page=page))
        return booking

    async def _insert_if_free(
        self, page: BookingPage, start: datetime, end: datetime, customer: CustomerInfo
    ) -> Booking:
        status = BookingStatus.CONFIRMED if page.auto_confirm else BookingStatus.PENDING
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    # Serialises concurrent reservations for this page across processes
                    await session.execute(
                        select(BookingPage.id).where(BookingPage.id == page.id).with_for_update()
                    )
                    if await active_booking_intervals(session, page.id, start, end):
                        raise ConflictError(SLOT_TAKEN_MESSAGE)
                    booking = Booking(
                        booking_page_id=page.id,
                        org_id=page.org_id,
                        customer_name=customer.name,
                        customer_phone=customer.phone,
                        customer_email=customer.email,
                        service_type=customer.service_type,
                        notes=customer.notes,
                        custom_responses=customer.custom_responses,
                        start_time=as_naive_utc(start),
                        end_time=as_naive_utc(end),
                        duration_minutes=int((end - start).total_seconds() // 60),
                        status=status.value,
                    )
                    session.add(booking)
                    await session.flush()
        except IntegrityError as e:
            if not is_overlap_violation(e):
                raise
            logger.info("Overlap constraint rejected booking page=%s %s: %s", page.id, start.isoformat(), e.orig)
            raise ConflictError(SLOT_TAKEN_MESSAGE) from e
        return booking

    async def transition(
        self,
        booking_id: int,
        org_id: str,
        new_status: BookingStatus,
        reason: str | None = None,
    ) -> Booking:
        """Move a booking of ``org_id`` to ``new_status`` if the lifecycle allows it."""
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    select(Booking)
                    .where(Booking.id == booking_id, Booking.org_id == org_id)
                    .with_for_update()
                )
                booking = result.scalar_one_or_none()
                if booking is None:
                    raise NotFoundError("Booking not found")
                old_status = booking.status
                if new_status.value not in ALLOWED_TRANSITIONS.get(old_status, frozenset()):
                    raise ConflictError(f"Cannot change a {old_status} booking to {new_status.value}")
                now = as_naive_utc(self._clock())
                booking.status = new_status.value
                booking.updated_at = now
                if new_status is BookingStatus.CANCELLED:
                    booking.cancelled_at = now
                    booking.cancellation_reason = reason
                page = await session.get(BookingPage, booking.booking_page_id)

        logger.info("Booking %s: %s -> %s", booking.id, old_status, new_status.value)
        if (old_status in ACTIVE_STATUSES) != (new_status.value in ACTIVE_STATUSES):
            await self._invalidate_day(page, booking.start_time)
        self._dispatcher.emit(BookingEvent(type=STATUS_EVENTS[new_status], booking=booking, page=page))
        return booking

    async def confirm(self, booking_id: int, org_id: str) -> Booking:
        return await self.transition(booking_id, org_id, BookingStatus.CONFIRMED)

    async def cancel(self, booking_id: int, org_id: str, reason: str | None = None) -> Booking:
        return await self.transition(booking_id, org_id, BookingStatus.CANCELLED, reason=reason)

    async def complete(self, booking_id: int, org_id: str) -> Booking:
        return await self.transition(booking_id, org_id, BookingStatus.COMPLETED)

    async def mark_no_show(self, booking_id: int, org_id: str) -> Booking:
        return await self.transition(booking_id, org_id, BookingStatus.NO_SHOW)
