"""Availability model definitions."""

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, Time
from medbook.database import Base


class AvailabilitySlot(Base):
    """A bounded interval at one location where a practitioner accepts bookings.

    Slots for the same practitioner, location and date never overlap. They
    are soft-closed (``is_open = False``) rather than deleted.
    """
    __tablename__ = "availability_slots"
    __table_args__ = (
        Index(
            'uq_availability_slot_start',
            'practitioner_id',
            'location_id',
            'date',
            'start_time',
            unique=True,
        ),
        Index('idx_availability_open_lookup', 'practitioner_id', 'location_id', 'date', 'is_open'),
    )

    id = Column(Integer, primary_key=True)
    practitioner_id = Column(Integer, ForeignKey("practitioners.id"), nullable=False)
    location_id = Column(Integer, ForeignKey("locations.id"), nullable=False)
    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_open = Column(Boolean, nullable=False, default=True)
    max_bookings = Column(Integer, nullable=False, default=1)
    booked_count = Column(Integer, nullable=False, default=0)
    withdrawn_at = Column(DateTime)
    created_at = Column(DateTime)

    @property
    def remaining_capacity(self) -> int:
        return max(0, (self.max_bookings or 0) - (self.booked_count or 0))
