from datetime import datetime
from typing import Any

from pydantic import BaseModel, EmailStr, Field


class SlotInfo(BaseModel):
    start_time: datetime
    end_time: datetime
    is_available: bool


class AvailabilityResponse(BaseModel):
    date: str  # YYYY-MM-DD, page timezone
    timezone: str
    slots: list[SlotInfo]


class BookRequest(BaseModel):
    start_time: datetime
    end_time: datetime
    customer_name: str = Field(..., min_length=1)
    customer_phone: str = Field(..., min_length=1)
    customer_email: EmailStr | None = None
    service_type: str | None = None
    notes: str | None = None
    custom_responses: dict[str, Any] = Field(default_factory=dict)


class CancelRequest(BaseModel):
    reason: str | None = None
