"""Appointment model definitions."""

from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    text,
)
from medbook.database import Base


class AppointmentStatus(str, Enum):
    SCHEDULED = 'scheduled'
    CONFIRMED = 'confirmed'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    NO_SHOW = 'no_show'
    EXPIRED = 'expired'


TERMINAL_STATUSES = frozenset({
    AppointmentStatus.COMPLETED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
    AppointmentStatus.EXPIRED,
})
ACTIVE_STATUSES = frozenset(set(AppointmentStatus) - TERMINAL_STATUSES)

_ACTIVE_STATUS_CLAUSE = "status IN ('scheduled', 'confirmed', 'in_progress')"
_STATUS_CLAUSE = (
    "status IN ('scheduled', 'confirmed', 'in_progress', 'completed', 'cancelled', 'no_show', 'expired')"
)


class Appointment(Base):
    """Represents a booked appointment. Rows are never deleted."""
    __tablename__ = "appointments"
    __table_args__ = (
        CheckConstraint(_STATUS_CLAUSE, name='appointments_status_check'),
        Index('idx_appointments_practitioner_date', 'practitioner_id', 'date'),
        Index('idx_appointments_client_date', 'client_id', 'date'),
        Index(
            'uq_appointments_active_slot_client',
            'slot_id',
            'client_id',
            unique=True,
            sqlite_where=text(_ACTIVE_STATUS_CLAUSE),
            postgresql_where=text(_ACTIVE_STATUS_CLAUSE),
        ),
    )

    id = Column(Integer, primary_key=True)
    practitioner_id = Column(Integer, ForeignKey("practitioners.id"), nullable=False)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    location_id = Column(Integer, ForeignKey("locations.id"), nullable=False)
    slot_id = Column(Integer, ForeignKey("availability_slots.id"), nullable=True)
    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    status = Column(String, nullable=False, default=AppointmentStatus.SCHEDULED.value)
    fee = Column(Numeric(10, 2), nullable=False)
    notes = Column(Text)
    fee_captured = Column(Boolean, nullable=False, default=False)
    refund_requested = Column(Boolean, nullable=False, default=False)
    review_open = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime)


class AppointmentStatusChange(Base):
    """Audit trail entry written for every appointment status change."""
    __tablename__ = "appointment_status_changes"

    id = Column(Integer, primary_key=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    from_status = Column(String)
    to_status = Column(String, nullable=False)
    actor_id = Column(Integer)
    actor_role = Column(String, nullable=False)
    changed_at = Column(DateTime, nullable=False)
