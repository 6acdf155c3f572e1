from app.models.booking_page import BookingPage, BookingPagePublic, BookingPageSettings, BookingPageUpdate
from app.models.booking import ACTIVE_STATUSES, Booking, BookingPublic, BookingStatus
from app.models.availability_cache import AvailabilityCacheEntry

__all__ = [
    "BookingPage",
    "BookingPagePublic",
    "BookingPageSettings",
    "BookingPageUpdate",
    "Booking",
    "BookingPublic",
    "BookingStatus",
    "ACTIVE_STATUSES",
    "AvailabilityCacheEntry",
]
