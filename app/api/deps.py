from functools import lru_cache
from datetime import timedelta

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import settings
from app.core.db import async_session_maker, get_session
from app.core.security import decode_access_token
from app.models.booking_page import BookingPage
from app.services.availability_cache import (
    AvailabilityCache,
    AvailabilityService,
    DatabaseAvailabilityCache,
    InMemoryAvailabilityCache,
)
from app.services.booking_events import BookingEventDispatcher
from app.services.busy_sources import BusySource, build_busy_sources
from app.services.calendar_service import GoogleCalendarClient
from app.services.notification_service import register_default_handlers
from app.services.reservation_guard import ReservationGuard

security = HTTPBearer(auto_error=False)

__all__ = [
    "get_session",
    "get_current_org_id",
    "get_availability_service",
    "get_reservation_guard",
    "get_event_dispatcher",
]


@lru_cache
def get_calendar_client() -> GoogleCalendarClient:
    return GoogleCalendarClient()


def _sources_for(page: BookingPage) -> list[BusySource]:
    return build_busy_sources(page, async_session_maker, get_calendar_client())


@lru_cache
def get_event_dispatcher() -> BookingEventDispatcher:
    dispatcher = BookingEventDispatcher()
    register_default_handlers(dispatcher, async_session_maker, get_calendar_client())
    return dispatcher


@lru_cache
def get_availability_service() -> AvailabilityService:
    ttl = timedelta(minutes=settings.availability_cache_ttl_minutes)
    cache: AvailabilityCache
    if settings.availability_cache_backend == "memory":
        cache = InMemoryAvailabilityCache(ttl)
    else:
        cache = DatabaseAvailabilityCache(async_session_maker, ttl)
    return AvailabilityService(cache, _sources_for, settings.calendar_source_timeout_seconds)


@lru_cache
def get_reservation_guard() -> ReservationGuard:
    return ReservationGuard(
        async_session_maker,
        get_availability_service(),
        get_event_dispatcher(),
        _sources_for,
        settings.calendar_source_timeout_seconds,
    )


async def get_current_org_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> str:
    """Organisation id of the authenticated business owner."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )
    org_id = decode_access_token(credentials.credentials)
    if not org_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return org_id
