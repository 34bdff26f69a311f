"""Slot model definitions."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer
from booking_api.database import Base


class Slot(Base):
    """Persisted bookable unit of a professional's time, stored in UTC."""
    __tablename__ = "slots"

    id = Column(Integer, primary_key=True)
    professional_id = Column(Integer, ForeignKey("professionals.id"), nullable=False)
    service_id = Column(Integer, ForeignKey("services.id", ondelete="SET NULL"), nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index("uq_slots_professional_start", "professional_id", "start_time", unique=True),
        Index("idx_slots_service_id", "service_id"),
        Index("idx_slots_available_start", "professional_id", "is_available", "start_time"),
    )
