"""Pydantic views shared by the scheduling services and the routes."""

from datetime import date, datetime, time
from decimal import Decimal

from pydantic import BaseModel, Field


class SlotWindow(BaseModel):
    start_time: time
    end_time: time
    max_bookings: int | None = Field(default=None)


class AvailabilitySlotResponse(BaseModel):
    id: int
    practitioner_id: int
    location_id: int
    date: date
    start_time: time
    end_time: time
    is_open: bool
    max_bookings: int
    booked_count: int
    remaining_capacity: int

    class Config:
        from_attributes = True


class AppointmentResponse(BaseModel):
    id: int
    practitioner_id: int
    client_id: int
    location_id: int
    slot_id: int | None = None
    date: date
    start_time: time
    end_time: time
    status: str
    fee: Decimal
    notes: str | None = None
    fee_captured: bool = False
    refund_requested: bool = False
    review_open: bool = False
    created_at: datetime
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class AppointmentEvent(BaseModel):
    """A lifecycle event handed to the notifier after a commit."""

    name: str
    recipients: tuple[str, ...]
    previous_status: str | None = None
    occurred_at: datetime


class BookingConfirmation(BaseModel):
    appointment: AppointmentResponse
    reference: str
    practitioner_name: str | None = None
    location_name: str | None = None
    message: str
    notification_mode: str


class OnboardingStatus(BaseModel):
    practitioner_id: int
    profile_completed: bool
    locations_attached: bool
    availability_published: bool
    next_step: str
    is_complete: bool
    progress: int
    next_step_description: str


class PractitionerResponse(BaseModel):
    id: int
    user_id: int
    specialty_id: int | None = None
    years_of_experience: int | None = None
    license_number: str | None = None
    bio: str | None = None
    fee: Decimal
    is_verified: bool
    is_active: bool
    total_appointments: int
    completed_appointments: int
    profile_completed: bool
    locations_attached: bool
    availability_published: bool

    class Config:
        from_attributes = True


class LocationResponse(BaseModel):
    id: int
    name: str
    address: str
    phone: str | None = None
    email: str | None = None

    class Config:
        from_attributes = True
