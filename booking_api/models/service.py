"""Service model definitions."""

from sqlalchemy import Column, Integer, ForeignKey, Numeric, String
from booking_api.database import Base


class Service(Base):
    """Bookable service offered by a company."""
    __tablename__ = "services"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(10, 2))
    duration_minutes = Column(Integer)
