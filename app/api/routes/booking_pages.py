import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_availability_service, get_current_org_id, get_session
from app.models.booking_page import BookingPageSettings, BookingPageUpdate
from app.services.availability_cache import AvailabilityService
from app.services.booking_page_service import get_page_for_org, update_page

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/booking-pages", tags=["booking-pages"])


@router.get("/me", response_model=BookingPageSettings)
async def get_my_page(
    session: AsyncSession = Depends(get_session),
    org_id: str = Depends(get_current_org_id),
) -> BookingPageSettings:
    page = await get_page_for_org(session, org_id)
    return BookingPageSettings.model_validate(page, from_attributes=True)


@router.put("/me", response_model=BookingPageSettings)
async def update_my_page(
    body: BookingPageUpdate,
    session: AsyncSession = Depends(get_session),
    org_id: str = Depends(get_current_org_id),
    availability: AvailabilityService = Depends(get_availability_service),
) -> BookingPageSettings:
    page = await get_page_for_org(session, org_id)
    page = await update_page(session, page, body)
    await session.commit()
    # Hours, durations or timezone may have changed every cached day
    await availability.invalidate_page(page.id)
    logger.info("Booking page %s settings updated", page.id)
    return BookingPageSettings.model_validate(page, from_attributes=True)
