"""Post-commit work for booking events: customer/business notifications and calendar sync.

Every channel is independent: one failing (SMTP down, Twilio error, Google
rejecting the event) is logged and the others still run. Nothing here can undo
or fail a booking.
"""
import asyncio
import logging

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.models.booking import Booking, BookingStatus
from app.models.booking_page import BookingPage
from app.services.booking_events import (
    BOOKING_CANCELLED,
    BOOKING_CREATED,
    BookingEvent,
    BookingEventDispatcher,
)
from app.services.calendar_service import GoogleCalendarClient
from app.services.email_service import (
    format_booking_time,
    send_business_notification_email,
    send_customer_confirmation_email,
)
from app.services.intervals import as_naive_utc, utc_now
from app.services.sms_service import send_sms

logger = logging.getLogger(__name__)


async def send_customer_confirmation(booking: Booking, page: BookingPage) -> bool:
    return await asyncio.to_thread(send_customer_confirmation_email, page, booking)


async def send_business_notification(booking: Booking, page: BookingPage) -> bool:
    return await asyncio.to_thread(send_business_notification_email, page, booking)


async def send_confirmation_sms(booking: Booking, page: BookingPage) -> bool:
    date_str, time_str = format_booking_time(page, booking.start_time, booking.end_time)
    if booking.status == BookingStatus.CONFIRMED.value:
        body = f"Your booking with {page.business_name} is confirmed for {date_str}, {time_str}. See you then!"
    else:
        body = f"{page.business_name} received your booking request for {date_str}, {time_str}. We'll confirm shortly."
    return await send_sms(booking.customer_phone, body)


def booking_page_url(page: BookingPage) -> str:
    return f"{settings.public_booking_base_url.rstrip('/')}/{page.slug}"


async def send_cancellation_sms(booking: Booking, page: BookingPage) -> bool:
    date_str, time_str = format_booking_time(page, booking.start_time, booking.end_time)
    body = (
        f"Your booking with {page.business_name} for {date_str}, {time_str} has been cancelled. "
        f"To book another time visit {booking_page_url(page)}"
    )
    return await send_sms(booking.customer_phone, body)


class NotificationHandler:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def on_created(self, event: BookingEvent) -> None:
        booking, page = event.booking, event.page
        channels = {
            "customer_email": send_customer_confirmation(booking, page),
            "customer_sms": send_confirmation_sms(booking, page),
            "business_email": send_business_notification(booking, page),
        }
        results = await asyncio.gather(*channels.values(), return_exceptions=True)
        sent_to_customer = False
        for name, result in zip(channels, results):
            if isinstance(result, BaseException):
                logger.error("Notification %s failed for booking %s: %s", name, booking.id, result)
            elif result and name.startswith("customer"):
                sent_to_customer = True
        if sent_to_customer:
            await self._mark_confirmation_sent(booking.id)

    async def on_cancelled(self, event: BookingEvent) -> None:
        try:
            await send_cancellation_sms(event.booking, event.page)
        except Exception as e:
            logger.error("Cancellation SMS failed for booking %s: %s", event.booking.id, e)

    async def _mark_confirmation_sent(self, booking_id: int) -> None:
        async with self._session_maker() as session:
            async with session.begin():
                await session.execute(
                    update(Booking)
                    .where(Booking.id == booking_id)
                    .values(confirmation_sent_at=as_naive_utc(utc_now()))
                )


class CalendarSyncHandler:
    """Mirrors new bookings onto the business's connected calendar."""

    def __init__(self, client: GoogleCalendarClient, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._client = client
        self._session_maker = session_maker

    async def on_created(self, event: BookingEvent) -> None:
        event_id = await self._client.create_event(event.page, event.booking)
        if not event_id:
            return
        async with self._session_maker() as session:
            async with session.begin():
                await session.execute(
                    update(Booking).where(Booking.id == event.booking.id).values(google_event_id=event_id)
                )
        logger.info("Created calendar event %s for booking %s", event_id, event.booking.id)


def register_default_handlers(
    dispatcher: BookingEventDispatcher,
    session_maker: async_sessionmaker[AsyncSession],
    calendar_client: GoogleCalendarClient,
) -> None:
    notifications = NotificationHandler(session_maker)
    calendar_sync = CalendarSyncHandler(calendar_client, session_maker)
    dispatcher.subscribe(BOOKING_CREATED, notifications.on_created)
    dispatcher.subscribe(BOOKING_CREATED, calendar_sync.on_created)
    dispatcher.subscribe(BOOKING_CANCELLED, notifications.on_cancelled)
