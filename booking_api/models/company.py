"""Company model definitions."""

from sqlalchemy import Column, Integer, String
from booking_api.database import Base


class Company(Base):
    """Tenant that owns professionals, services and API keys."""
    __tablename__ = "companies"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
