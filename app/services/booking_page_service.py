from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError, ValidationError
from app.models.booking_page import BookingPage, BookingPageUpdate
from app.services.intervals import as_naive_utc, utc_now
from app.services.slot_generator import page_zone, parse_business_hours


async def get_active_page_by_slug(session: AsyncSession, slug: str) -> BookingPage:
    result = await session.execute(
        select(BookingPage).where(BookingPage.slug == slug, BookingPage.is_active == True)  # noqa: E712
    )
    page = result.scalar_one_or_none()
    if page is None:
        raise NotFoundError("Booking page not found")
    return page


async def get_page_for_org(session: AsyncSession, org_id: str) -> BookingPage:
    result = await session.execute(select(BookingPage).where(BookingPage.org_id == org_id))
    page = result.scalar_one_or_none()
    if page is None:
        raise NotFoundError("This organisation has no booking page")
    return page


def validate_page_settings(page: BookingPage) -> None:
    """Strict checks applied when an owner saves settings. Raises ValidationError."""
    if page.slot_duration_minutes <= 0:
        raise ValidationError("slot_duration_minutes must be > 0")
    if page.buffer_time_minutes < 0:
        raise ValidationError("buffer_time_minutes must be >= 0")
    if page.booking_notice_hours < 0:
        raise ValidationError("booking_notice_hours must be >= 0")
    if page.max_days_advance < 0:
        raise ValidationError("max_days_advance must be >= 0")
    page_zone(page)
    parse_business_hours(page.business_hours, strict=True)
    for question in page.custom_questions or []:
        if not str(question.get("label", "")).strip():
            raise ValidationError("Every custom question needs a label")


async def update_page(session: AsyncSession, page: BookingPage, data: BookingPageUpdate) -> BookingPage:
    for key, value in data.model_dump(exclude_unset=True).items():
        setattr(page, key, value)
    validate_page_settings(page)
    page.updated_at = as_naive_utc(utc_now())
    session.add(page)
    await session.flush()
    await session.refresh(page)
    return page
