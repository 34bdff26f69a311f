"""Availability model definitions."""

from sqlalchemy import Column, Integer, ForeignKey, String
from booking_api.database import Base


class AvailabilityRule(Base):
    """Recurring weekly block of working time for a professional."""
    __tablename__ = "availabilities"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    professional_id = Column(Integer, ForeignKey("professionals.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)  # 0=Sunday .. 6=Saturday
    start_time = Column(String, nullable=False)  # local HH:MM
    end_time = Column(String, nullable=False)
