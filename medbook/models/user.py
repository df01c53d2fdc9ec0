"""User model definitions."""

from sqlalchemy import Column, Integer, String
from medbook.database import Base


class User(Base):
    """Represents an application user (client, practitioner or admin)."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String)
    phone = Column(String)
    role = Column(String, nullable=False, default='client')  # client/practitioner/admin
