from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    BOOKED = "booked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED)


class StylistRef(BaseModel):
    id: str
    name: Optional[str] = None
    username: Optional[str] = None
    location: Optional[str] = None

    @field_validator("id", mode="before")
    def _coerce_id(cls, value):
        return str(value) if value is not None else value


class CustomerRef(BaseModel):
    id: str
    name: Optional[str] = None
    username: Optional[str] = None

    @field_validator("id", mode="before")
    def _coerce_id(cls, value):
        return str(value) if value is not None else value


class ReviewRef(BaseModel):
    id: Optional[str] = None
    rating: Optional[int] = None
    comment: Optional[str] = None

    @field_validator("id", mode="before")
    def _coerce_id(cls, value):
        return str(value) if value is not None else value


class Appointment(BaseModel):
    """Snapshot of an appointment as reported by the backend."""

    id: str
    status: AppointmentStatus
    time: datetime
    location: Optional[str] = None
    services: Optional[str] = None
    selected_service: Optional[str] = None
    price: Optional[float] = None
    duration: Optional[int] = None
    stylist: StylistRef
    customer: Optional[CustomerRef] = None
    review: Optional[ReviewRef] = None

    @field_validator("id", mode="before")
    def _coerce_id(cls, value):
        return str(value) if value is not None else value

    @model_validator(mode="after")
    def _open_slots_are_pending(self) -> "Appointment":
        if self.customer is None and self.status is not AppointmentStatus.PENDING:
            raise ValueError("an appointment without a customer must be pending")
        return self

    @property
    def is_open_slot(self) -> bool:
        return self.status is AppointmentStatus.PENDING and self.customer is None

    @property
    def awaiting_confirmation(self) -> bool:
        return self.status is AppointmentStatus.PENDING and self.customer is not None

    @property
    def display_status(self) -> str:
        if self.awaiting_confirmation:
            return "NEW REQUEST"
        if self.is_open_slot:
            return "AVAILABLE"
        return self.status.value.upper()


class AppointmentFilters(BaseModel):
    location: Optional[str] = None
    date: Optional[str] = None       # ISO date
    service_id: Optional[int] = None
    page: Optional[int] = Field(default=None, ge=1)
    per_page: Optional[int] = Field(default=None, ge=1, le=100)


class MyAppointmentsFilters(BaseModel):
    status: Optional[AppointmentStatus] = None
    page: Optional[int] = Field(default=None, ge=1)
    per_page: Optional[int] = Field(default=None, ge=1, le=100)


class AppointmentListResponse(BaseModel):
    appointments: List[Appointment]
    total: Optional[int] = None
    page: Optional[int] = None
    per_page: Optional[int] = None


class BookingRequest(BaseModel):
    selected_service: Optional[str] = None


class AvailabilityRequest(BaseModel):
    time: datetime
    location: str
    services: str

    @field_validator("location", "services")
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("time")
    def _timezone_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("time must include a timezone offset")
        return value


class AppointmentPermissions(BaseModel):
    can_book: bool
    is_booked_by_viewer: bool
    is_owner: bool
    can_review: bool
    can_cancel: bool
    can_accept_or_decline: bool
    can_complete: bool
    display_status: str
