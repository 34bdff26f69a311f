"""Professional model definitions."""

from sqlalchemy import Column, Integer, ForeignKey, String
from booking_api.database import Base


class Professional(Base):
    """Person whose time is booked."""
    __tablename__ = "professionals"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
