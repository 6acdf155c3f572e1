from datetime import date, datetime, time

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_org_id, get_reservation_guard, get_session
from app.api.schemas.booking import CancelRequest
from app.core.errors import ValidationError
from app.models.booking import Booking, BookingPublic, BookingStatus
from app.services.reservation_guard import ReservationGuard

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _to_public(booking: Booking) -> BookingPublic:
    return BookingPublic.model_validate(booking, from_attributes=True)


@router.get("", response_model=list[BookingPublic])
async def list_bookings(
    status_filter: str | None = Query(None, alias="status"),
    from_date: date | None = Query(None, alias="from_date"),
    session: AsyncSession = Depends(get_session),
    org_id: str = Depends(get_current_org_id),
) -> list[BookingPublic]:
    q = select(Booking).where(Booking.org_id == org_id).order_by(Booking.start_time)
    if status_filter:
        if status_filter not in {s.value for s in BookingStatus}:
            raise ValidationError(f"Unknown status {status_filter!r}")
        q = q.where(Booking.status == status_filter)
    if from_date:
        q = q.where(Booking.start_time >= datetime.combine(from_date, time(0, 0)))
    result = await session.execute(q)
    return [_to_public(b) for b in result.scalars().all()]


@router.post("/{booking_id}/confirm", response_model=BookingPublic)
async def confirm_booking(
    booking_id: int,
    org_id: str = Depends(get_current_org_id),
    guard: ReservationGuard = Depends(get_reservation_guard),
) -> BookingPublic:
    return _to_public(await guard.confirm(booking_id, org_id))


@router.post("/{booking_id}/cancel", response_model=BookingPublic)
async def cancel_booking(
    booking_id: int,
    body: CancelRequest | None = None,
    org_id: str = Depends(get_current_org_id),
    guard: ReservationGuard = Depends(get_reservation_guard),
) -> BookingPublic:
    reason = body.reason if body else None
    return _to_public(await guard.cancel(booking_id, org_id, reason=reason))


@router.post("/{booking_id}/complete", response_model=BookingPublic)
async def complete_booking(
    booking_id: int,
    org_id: str = Depends(get_current_org_id),
    guard: ReservationGuard = Depends(get_reservation_guard),
) -> BookingPublic:
    return _to_public(await guard.complete(booking_id, org_id))


@router.post("/{booking_id}/no-show", response_model=BookingPublic)
async def mark_no_show(
    booking_id: int,
    org_id: str = Depends(get_current_org_id),
    guard: ReservationGuard = Depends(get_reservation_guard),
) -> BookingPublic:
    return _to_public(await guard.mark_no_show(booking_id, org_id))
