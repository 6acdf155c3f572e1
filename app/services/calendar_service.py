import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from app.core.config import settings
from app.core.errors import UpstreamUnavailable
from app.models.booking import Booking
from app.models.booking_page import BookingPage
from app.services.intervals import BusyInterval, as_aware_utc

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_FREEBUSY_URL = "https://www.googleapis.com/calendar/v3/freeBusy"
GOOGLE_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/{calendar_id}/events"


def _parse_google_datetime(value: str) -> datetime:
    # Python < 3.11 fromisoformat does not take a trailing Z
    return as_aware_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


class GoogleCalendarClient:
    """Google Calendar capability for one organisation's booking page.

    Access tokens are obtained from the page's stored refresh token on every
    call; consent and token storage happen elsewhere.
    """

    source_name = "google_calendar"

    def __init__(self, http_client: httpx.AsyncClient | None = None, timeout: float = 10.0) -> None:
        self._http_client = http_client
        self._timeout = timeout

    def is_configured(self, page: BookingPage) -> bool:
        return bool(
            settings.google_calendar_enabled
            and page.google_calendar_id
            and page.google_calendar_refresh_token
        )

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(url, **kwargs)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(url, **kwargs)

    async def get_access_token(self, page: BookingPage) -> str:
        if not self.is_configured(page):
            raise UpstreamUnavailable(f"Google Calendar not configured for page {page.id}")
        try:
            resp = await self._post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": settings.google_client_id,
                    "client_secret": settings.google_client_secret,
                    "refresh_token": page.google_calendar_refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Google token refresh failed: {e}") from e
        if resp.status_code != 200:
            logger.warning(
                "Google token refresh failed: page=%s status=%s body=%s",
                page.id,
                resp.status_code,
                resp.text[:500],
            )
            raise UpstreamUnavailable(f"Google token refresh returned {resp.status_code}")
        access_token = resp.json().get("access_token")
        if not access_token:
            raise UpstreamUnavailable("Google token refresh returned no access_token")
        return access_token

    async def list_busy_times(
        self, page: BookingPage, range_start: datetime, range_end: datetime
    ) -> list[BusyInterval]:
        """Busy blocks of the page's calendar overlapping the range (freeBusy API)."""
        access_token = await self.get_access_token(page)
        calendar_id = page.google_calendar_id
        try:
            resp = await self._post(
                GOOGLE_FREEBUSY_URL,
                json={
                    "timeMin": as_aware_utc(range_start).isoformat(),
                    "timeMax": as_aware_utc(range_end).isoformat(),
                    "items": [{"id": calendar_id}],
                },
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Google freeBusy request failed: {e}") from e
        if resp.status_code != 200:
            raise UpstreamUnavailable(f"Google freeBusy returned {resp.status_code}")
        calendar = resp.json().get("calendars", {}).get(calendar_id, {})
        if calendar.get("errors"):
            raise UpstreamUnavailable(f"Google freeBusy errors: {calendar['errors']}")
        return [
            BusyInterval(
                start=_parse_google_datetime(block["start"]),
                end=_parse_google_datetime(block["end"]),
                source=self.source_name,
            )
            for block in calendar.get("busy", [])
        ]

    async def create_event(self, page: BookingPage, booking: Booking) -> str | None:
        """Create the appointment on the business calendar. Returns the event id, or None
        when the page has no calendar connected."""
        if not self.is_configured(page):
            return None
        access_token = await self.get_access_token(page)
        description = f"Appointment with {booking.customer_name}\nPhone: {booking.customer_phone}"
        if booking.customer_email:
            description += f"\nEmail: {booking.customer_email}"
        if booking.notes:
            description += f"\n\nNotes: {booking.notes}"
        event: dict[str, Any] = {
            "summary": f"{page.business_name} - {booking.customer_name}",
            "description": description,
            "start": {"dateTime": as_aware_utc(booking.start_time).isoformat(), "timeZone": page.timezone},
            "end": {"dateTime": as_aware_utc(booking.end_time).isoformat(), "timeZone": page.timezone},
        }
        if booking.customer_email:
            event["attendees"] = [
                {
                    "email": booking.customer_email,
                    "displayName": booking.customer_name,
                    "responseStatus": "needsAction",
                }
            ]
        url = GOOGLE_EVENTS_URL.format(calendar_id=quote(page.google_calendar_id or "", safe=""))
        try:
            resp = await self._post(url, json=event, headers={"Authorization": f"Bearer {access_token}"})
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Google event creation failed: {e}") from e
        if resp.status_code not in (200, 201):
            raise UpstreamUnavailable(f"Google event creation returned {resp.status_code}: {resp.text[:300]}")
        return resp.json().get("id")
