"""Tests for slot reservation and the booking lifecycle."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.models.booking import Booking, BookingStatus
from app.services.booking_events import (
    BOOKING_CANCELLED,
    BOOKING_COMPLETED,
    BOOKING_CONFIRMED,
    BOOKING_CREATED,
    BOOKING_NO_SHOW,
)
from app.services.intervals import BusyInterval
from app.services.reservation_guard import is_overlap_violation, validate_customer

from conftest import (
    DAY,
    FailingBusySource,
    StaticBusySource,
    add_booking,
    at,
    make_customer,
    make_page,
    save_page,
)


async def _active_bookings(session_maker, page_id):
    async with session_maker() as session:
        result = await session.execute(
            select(Booking).where(
                Booking.booking_page_id == page_id,
                Booking.status.in_(["pending", "confirmed"]),
            )
        )
        return result.scalars().all()


class TestReserve:
    @pytest.mark.asyncio
    async def test_free_slot_is_booked(self, guard, page, session_maker):
        booking = await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        assert booking.id is not None
        assert booking.status == BookingStatus.CONFIRMED.value
        assert booking.duration_minutes == 60
        assert len(await _active_bookings(session_maker, page.id)) == 1

    @pytest.mark.asyncio
    async def test_pending_when_auto_confirm_is_off(self, guard, session_maker):
        page = await save_page(session_maker, make_page(auto_confirm=False))
        booking = await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        assert booking.status == BookingStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_taken_slot_conflicts(self, guard, page):
        await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        with pytest.raises(ConflictError):
            await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer(name="Second"))

    @pytest.mark.asyncio
    async def test_pending_booking_also_blocks(self, guard, page, session_maker):
        await add_booking(session_maker, page, at(DAY, 9), at(DAY, 10), BookingStatus.PENDING)
        with pytest.raises(ConflictError):
            await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())

    @pytest.mark.asyncio
    async def test_cancelled_booking_does_not_block(self, guard, page, session_maker):
        await add_booking(session_maker, page, at(DAY, 9), at(DAY, 10), BookingStatus.CANCELLED)
        booking = await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        assert booking.is_active

    @pytest.mark.asyncio
    async def test_calendar_busy_time_conflicts(self, guard, page, extra_sources):
        busy = [BusyInterval(at(DAY, 9, 30), at(DAY, 9, 45), "google_calendar")]
        extra_sources.append(StaticBusySource(busy))
        with pytest.raises(ConflictError):
            await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())

    @pytest.mark.asyncio
    async def test_failing_calendar_does_not_block(self, guard, page, extra_sources):
        extra_sources.append(FailingBusySource())
        booking = await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        assert booking.id is not None

    @pytest.mark.asyncio
    async def test_concurrent_requests_for_one_slot_yield_one_booking(self, guard, page, session_maker):
        results = await asyncio.gather(
            *(
                guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer(name=f"Customer {i}"))
                for i in range(8)
            ),
            return_exceptions=True,
        )
        booked = [r for r in results if isinstance(r, Booking)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(booked) == 1
        assert len(conflicts) == 7
        assert len(await _active_bookings(session_maker, page.id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_requests_for_different_slots_all_succeed(self, guard, page):
        windows = [
            (at(DAY, 9), at(DAY, 10)),
            (at(DAY, 10, 15), at(DAY, 11, 15)),
            (at(DAY, 11, 30), at(DAY, 12, 30)),
        ]
        results = await asyncio.gather(*(guard.reserve(page, s, e, make_customer()) for s, e in windows))
        assert len({b.id for b in results}) == 3


class TestReserveValidation:
    @pytest.mark.asyncio
    async def test_inverted_window(self, guard, page):
        with pytest.raises(ValidationError):
            await guard.reserve(page, at(DAY, 10), at(DAY, 9), make_customer())

    @pytest.mark.asyncio
    async def test_misaligned_window(self, guard, page):
        with pytest.raises(ValidationError):
            await guard.reserve(page, at(DAY, 9, 30), at(DAY, 10, 30), make_customer())

    @pytest.mark.asyncio
    async def test_inside_notice_period(self, guard, page, clock):
        clock.now = at(DAY, 8, 30)
        with pytest.raises(ValidationError):
            await guard.reserve(page, at(DAY, 10, 15), at(DAY, 11, 15), make_customer())

    @pytest.mark.asyncio
    async def test_beyond_max_days_advance(self, guard, page):
        far = DAY + timedelta(days=70)
        # 2026-05-12 is a Tuesday
        with pytest.raises(ValidationError):
            await guard.reserve(page, at(far, 9), at(far, 10), make_customer())

    @pytest.mark.asyncio
    async def test_missing_phone(self, guard, page):
        with pytest.raises(ValidationError):
            await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer(phone="  "))

    def test_service_must_be_offered(self):
        page = make_page(id=1, enabled_services=["tax_return"])
        with pytest.raises(ValidationError):
            validate_customer(page, make_customer(service_type="payroll"))

    def test_required_question_must_be_answered(self):
        page = make_page(id=1, custom_questions=[{"label": "ABN", "required": True}])
        with pytest.raises(ValidationError):
            validate_customer(page, make_customer())
        cleaned = validate_customer(page, make_customer(custom_responses={"ABN": "12 345 678 901"}))
        assert cleaned.custom_responses == {"ABN": "12 345 678 901"}

    def test_customer_fields_are_trimmed(self):
        cleaned = validate_customer(make_page(id=1), make_customer(name="  Jane ", notes="   "))
        assert cleaned.name == "Jane"
        assert cleaned.notes is None


class TestCacheCoherence:
    @pytest.mark.asyncio
    async def test_booking_is_visible_on_next_read(self, guard, availability, page):
        before = {s.start: s.is_available for s in await availability.get_or_compute(page, DAY)}
        assert before[at(DAY, 9)] is True

        await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())

        after = {s.start: s.is_available for s in await availability.get_or_compute(page, DAY)}
        assert after[at(DAY, 9)] is False

    @pytest.mark.asyncio
    async def test_cancellation_frees_the_slot(self, guard, availability, page):
        booking = await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        await availability.get_or_compute(page, DAY)

        await guard.cancel(booking.id, page.org_id, reason="Sick")

        slots = {s.start: s.is_available for s in await availability.get_or_compute(page, DAY)}
        assert slots[at(DAY, 9)] is True

    @pytest.mark.asyncio
    async def test_stale_cache_cannot_admit_a_double_booking(self, guard, availability, page, session_maker):
        await availability.get_or_compute(page, DAY)
        # Written behind the cache's back
        await add_booking(session_maker, page, at(DAY, 9), at(DAY, 10))
        assert (await availability.get_or_compute(page, DAY))[0].is_available
        with pytest.raises(ConflictError):
            await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())


class TestTransitions:
    @pytest.mark.asyncio
    async def test_pending_can_be_confirmed_then_completed(self, guard, session_maker):
        page = await save_page(session_maker, make_page(auto_confirm=False))
        booking = await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        assert (await guard.confirm(booking.id, page.org_id)).status == "confirmed"
        assert (await guard.complete(booking.id, page.org_id)).status == "completed"

    @pytest.mark.asyncio
    async def test_cancel_records_reason(self, guard, page):
        booking = await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        cancelled = await guard.cancel(booking.id, page.org_id, reason="Rescheduled")
        assert cancelled.status == "cancelled"
        assert cancelled.cancellation_reason == "Rescheduled"
        assert cancelled.cancelled_at is not None

    @pytest.mark.asyncio
    async def test_terminal_status_cannot_change(self, guard, page):
        booking = await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        await guard.mark_no_show(booking.id, page.org_id)
        with pytest.raises(ConflictError):
            await guard.cancel(booking.id, page.org_id)

    @pytest.mark.asyncio
    async def test_pending_cannot_be_completed(self, guard, session_maker):
        page = await save_page(session_maker, make_page(auto_confirm=False))
        booking = await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        with pytest.raises(ConflictError):
            await guard.complete(booking.id, page.org_id)

    @pytest.mark.asyncio
    async def test_other_organisation_cannot_see_booking(self, guard, page):
        booking = await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        with pytest.raises(NotFoundError):
            await guard.cancel(booking.id, "org-2")

    @pytest.mark.asyncio
    async def test_slot_can_be_rebooked_after_cancellation(self, guard, page):
        booking = await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        await guard.cancel(booking.id, page.org_id)
        again = await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer(name="Next"))
        assert again.id != booking.id


class TestEvents:
    @pytest.mark.asyncio
    async def test_created_and_cancelled_events_are_emitted(self, guard, dispatcher, page):
        seen = []

        async def record(event):
            seen.append((event.type, event.booking.id))

        dispatcher.subscribe(BOOKING_CREATED, record)
        dispatcher.subscribe(BOOKING_CANCELLED, record)
        booking = await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        await guard.cancel(booking.id, page.org_id)
        await dispatcher.drain()
        assert seen == [(BOOKING_CREATED, booking.id), (BOOKING_CANCELLED, booking.id)]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_fail_the_booking(self, guard, dispatcher, page, session_maker):
        async def broken(event):
            raise RuntimeError("SMTP down")

        dispatcher.subscribe(BOOKING_CREATED, broken)
        booking = await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        await dispatcher.drain()
        assert [b.id for b in await _active_bookings(session_maker, page.id)] == [booking.id]

    @pytest.mark.asyncio
    async def test_no_event_for_rejected_reservation(self, guard, dispatcher, page):
        seen = []

        async def record(event):
            seen.append(event)

        await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        dispatcher.subscribe(BOOKING_CREATED, record)
        with pytest.raises(ConflictError):
            await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        await dispatcher.drain()
        assert seen == []

    @pytest.mark.asyncio
    async def test_each_transition_emits_its_own_event(self, guard, dispatcher, session_maker):
        page = await save_page(session_maker, make_page(auto_confirm=False))
        seen = []

        async def record(event):
            seen.append(event.type)

        for event_type in (BOOKING_CONFIRMED, BOOKING_COMPLETED, BOOKING_NO_SHOW):
            dispatcher.subscribe(event_type, record)
        first = await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        await guard.confirm(first.id, page.org_id)
        await guard.complete(first.id, page.org_id)
        second = await guard.reserve(page, at(DAY, 10, 15), at(DAY, 11, 15), make_customer())
        await guard.mark_no_show(second.id, page.org_id)
        await dispatcher.drain()
        assert seen == [BOOKING_CONFIRMED, BOOKING_COMPLETED, BOOKING_NO_SHOW]


class TestCacheOutage:
    @pytest.fixture
    def broken_cache(self, availability, monkeypatch):
        async def unreachable(page_id, day):
            raise ConnectionError("cache store down")

        monkeypatch.setattr(availability.cache, "invalidate", unreachable)

    @pytest.mark.asyncio
    async def test_committed_booking_is_still_returned(self, guard, dispatcher, page, session_maker, broken_cache):
        seen = []

        async def record(event):
            seen.append(event.booking.id)

        dispatcher.subscribe(BOOKING_CREATED, record)
        booking = await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        await dispatcher.drain()
        assert [b.id for b in await _active_bookings(session_maker, page.id)] == [booking.id]
        assert seen == [booking.id]

    @pytest.mark.asyncio
    async def test_cancellation_still_succeeds(self, guard, dispatcher, page, broken_cache):
        seen = []

        async def record(event):
            seen.append(event.type)

        dispatcher.subscribe(BOOKING_CANCELLED, record)
        booking = await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        cancelled = await guard.cancel(booking.id, page.org_id)
        await dispatcher.drain()
        assert cancelled.status == "cancelled"
        assert seen == [BOOKING_CANCELLED]


class TestPageLocks:
    @pytest.mark.asyncio
    async def test_lock_is_released_after_reservation(self, guard, page):
        await guard.reserve(page, at(DAY, 9), at(DAY, 10), make_customer())
        assert page.id not in guard._page_locks

    @pytest.mark.asyncio
    async def test_waiters_share_one_lock(self, guard):
        lock = guard._page_lock(7)
        assert guard._page_lock(7) is lock
        assert guard._page_lock(8) is not lock


class TestOverlapViolation:
    def test_exclusion_constraint_is_recognised(self):
        orig = Exception('conflicting key value violates exclusion constraint "bookings_no_overlap_per_page"')
        assert is_overlap_violation(IntegrityError("INSERT INTO bookings", {}, orig))

    def test_other_integrity_errors_are_not_conflicts(self):
        orig = Exception('insert violates foreign key constraint "bookings_booking_page_id_fkey"')
        assert not is_overlap_violation(IntegrityError("INSERT INTO bookings", {}, orig))
