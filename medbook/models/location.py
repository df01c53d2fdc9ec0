"""Location model definitions."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from medbook.database import Base


class Location(Base):
    """A practice location; shared by any number of practitioners."""
    __tablename__ = "locations"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    address = Column(String, nullable=False)
    phone = Column(String)
    email = Column(String)
    created_by = Column(Integer, ForeignKey("users.id"))


class PractitionerLocation(Base):
    __tablename__ = "practitioner_locations"
    __table_args__ = (
        UniqueConstraint('practitioner_id', 'location_id', name='uq_practitioner_location'),
    )

    id = Column(Integer, primary_key=True)
    practitioner_id = Column(Integer, ForeignKey("practitioners.id"), nullable=False, index=True)
    location_id = Column(Integer, ForeignKey("locations.id"), nullable=False)
    created_at = Column(DateTime)
