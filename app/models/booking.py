from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel


def _utc_naive_now() -> datetime:
    """Naive UTC for TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(UTC).replace(tzinfo=None)


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


# Statuses that claim their [start_time, end_time) window
ACTIVE_STATUSES = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)


class Booking(SQLModel, table=True):
    __tablename__ = "bookings"
    __table_args__ = (Index("ix_bookings_page_start", "booking_page_id", "start_time"),)

    id: int | None = Field(default=None, primary_key=True)
    booking_page_id: int = Field(foreign_key="booking_pages.id", index=True)
    org_id: str = Field(index=True)

    customer_name: str
    customer_phone: str = Field(index=True)
    customer_email: str | None = None
    service_type: str | None = None
    notes: str | None = None
    custom_responses: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    start_time: datetime  # naive UTC
    end_time: datetime  # naive UTC
    duration_minutes: int
    status: str = Field(default=BookingStatus.PENDING.value, index=True)

    google_event_id: str | None = None
    confirmation_sent_at: datetime | None = None

    created_at: datetime = Field(default_factory=_utc_naive_now)
    updated_at: datetime = Field(default_factory=_utc_naive_now)
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class BookingPublic(SQLModel):
    id: int
    booking_page_id: int
    customer_name: str
    customer_phone: str
    customer_email: str | None = None
    service_type: str | None = None
    notes: str | None = None
    custom_responses: dict[str, Any]
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    status: str
    created_at: datetime
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
