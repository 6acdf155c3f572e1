from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def _utc_naive_now() -> datetime:
    """Naive UTC for TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def default_business_hours() -> dict[str, dict[str, Any]]:
    """Weekdays 09:00-17:00, weekends closed."""
    return {
        day: {"enabled": day not in ("saturday", "sunday"), "start": "09:00", "end": "17:00"}
        for day in WEEKDAYS
    }


class BookingPage(SQLModel, table=True):
    __tablename__ = "booking_pages"
    id: int | None = Field(default=None, primary_key=True)
    org_id: str = Field(unique=True, index=True)  # one booking page per organisation
    slug: str = Field(unique=True, index=True)
    business_name: str
    business_email: str | None = None
    business_phone: str | None = None
    business_logo_url: str | None = None
    primary_color: str = "#ff4500"

    business_hours: dict[str, Any] = Field(
        default_factory=default_business_hours, sa_column=Column(JSON, nullable=False)
    )
    slot_duration_minutes: int = 60
    buffer_time_minutes: int = 15
    booking_notice_hours: int = 24
    max_days_advance: int = 60
    timezone: str = "Australia/Sydney"
    auto_confirm: bool = True

    # Calendar integration; the refresh token is exchanged for access tokens on demand
    google_calendar_id: str | None = None
    google_calendar_refresh_token: str | None = None

    enabled_services: list[str] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    custom_questions: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )

    is_active: bool = True
    created_at: datetime = Field(default_factory=_utc_naive_now)
    updated_at: datetime = Field(default_factory=_utc_naive_now)


class BookingPageUpdate(SQLModel):
    business_name: str | None = None
    business_email: str | None = None
    business_phone: str | None = None
    business_logo_url: str | None = None
    primary_color: str | None = None
    business_hours: dict[str, Any] | None = None
    slot_duration_minutes: int | None = None
    buffer_time_minutes: int | None = None
    booking_notice_hours: int | None = None
    max_days_advance: int | None = None
    timezone: str | None = None
    auto_confirm: bool | None = None
    enabled_services: list[str] | None = None
    custom_questions: list[dict[str, Any]] | None = None
    is_active: bool | None = None


class BookingPagePublic(SQLModel):
    id: int
    slug: str
    business_name: str
    business_logo_url: str | None = None
    primary_color: str
    business_hours: dict[str, Any]
    slot_duration_minutes: int
    buffer_time_minutes: int
    booking_notice_hours: int
    max_days_advance: int
    timezone: str
    enabled_services: list[str] | None = None
    custom_questions: list[dict[str, Any]]


class BookingPageSettings(BookingPagePublic):
    """Owner view of the page; credentials are never returned."""

    org_id: str
    business_email: str | None = None
    business_phone: str | None = None
    auto_confirm: bool
    google_calendar_id: str | None = None
    is_active: bool
    created_at: datetime
    updated_at: datetime
