"""Practitioner and specialty model definitions."""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Numeric, String, Text
from medbook.database import Base


class Specialty(Base):
    """A medical specialty a practitioner can declare."""
    __tablename__ = "specialties"

    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    description = Column(Text)


class Practitioner(Base):
    """The service-providing side of an appointment.

    The three onboarding booleans are a cache of the derived onboarding
    status; ``medbook.scheduling.onboarding`` is the source of truth.
    """
    __tablename__ = "practitioners"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    specialty_id = Column(Integer, ForeignKey("specialties.id"))
    years_of_experience = Column(Integer)
    license_number = Column(String)
    bio = Column(Text)
    fee = Column(Numeric(10, 2), nullable=False, default=0)
    is_verified = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    total_appointments = Column(Integer, nullable=False, default=0)
    completed_appointments = Column(Integer, nullable=False, default=0)
    profile_completed = Column(Boolean, nullable=False, default=False)
    locations_attached = Column(Boolean, nullable=False, default=False)
    availability_published = Column(Boolean, nullable=False, default=False)
