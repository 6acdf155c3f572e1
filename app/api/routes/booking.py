import asyncio
import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_availability_service, get_reservation_guard, get_session
from app.api.schemas.booking import AvailabilityResponse, BookRequest, SlotInfo
from app.core.config import settings
from app.models.booking import BookingPublic
from app.models.booking_page import BookingPagePublic
from app.services.availability_cache import AvailabilityService
from app.services.booking_page_service import get_active_page_by_slug
from app.services.reservation_guard import CustomerInfo, ReservationGuard
from app.services.slot_generator import booking_window_open

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/booking", tags=["booking"])


@router.get("/{slug}", response_model=BookingPagePublic)
async def get_booking_page(
    slug: str,
    session: AsyncSession = Depends(get_session),
) -> BookingPagePublic:
    page = await get_active_page_by_slug(session, slug)
    return BookingPagePublic.model_validate(page, from_attributes=True)


@router.get("/{slug}/availability", response_model=AvailabilityResponse)
async def get_availability(
    slug: str,
    date_param: date = Query(..., alias="date"),
    session: AsyncSession = Depends(get_session),
    availability: AvailabilityService = Depends(get_availability_service),
) -> AvailabilityResponse:
    """Slots for one calendar day in the page's timezone. Times are ISO-8601 UTC."""
    page = await get_active_page_by_slug(session, slug)
    if not booking_window_open(page, date_param, availability.now()):
        return AvailabilityResponse(date=date_param.isoformat(), timezone=page.timezone, slots=[])
    try:
        slots = await asyncio.wait_for(
            availability.get_or_compute(page, date_param),
            timeout=settings.availability_request_timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.error("Availability for %s on %s timed out", slug, date_param)
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail="Availability is taking too long to load, please try again",
        )
    return AvailabilityResponse(
        date=date_param.isoformat(),
        timezone=page.timezone,
        slots=[SlotInfo(start_time=s.start, end_time=s.end, is_available=s.is_available) for s in slots],
    )


@router.post("/{slug}/book", response_model=BookingPublic, status_code=status.HTTP_201_CREATED)
async def book(
    slug: str,
    body: BookRequest,
    session: AsyncSession = Depends(get_session),
    guard: ReservationGuard = Depends(get_reservation_guard),
) -> BookingPublic:
    page = await get_active_page_by_slug(session, slug)
    customer = CustomerInfo(
        name=body.customer_name,
        phone=body.customer_phone,
        email=body.customer_email,
        notes=body.notes,
        service_type=body.service_type,
        custom_responses=body.custom_responses,
    )
    booking = await guard.reserve(page, body.start_time, body.end_time, customer)
    return BookingPublic.model_validate(booking, from_attributes=True)
