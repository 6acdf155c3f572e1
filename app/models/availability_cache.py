from datetime import date, datetime
from typing import Any

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


class AvailabilityCacheEntry(SQLModel, table=True):
    """Generated slots of one page for one calendar day (page timezone)."""

    __tablename__ = "availability_cache"
    __table_args__ = (UniqueConstraint("booking_page_id", "slot_date", name="uq_availability_cache_page_date"),)

    id: int | None = Field(default=None, primary_key=True)
    booking_page_id: int = Field(foreign_key="booking_pages.id", index=True)
    slot_date: date
    slots: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    cached_at: datetime = Field(index=True)  # naive UTC
