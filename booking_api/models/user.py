"""User model definitions."""

from sqlalchemy import Column, Integer, ForeignKey, String
from booking_api.database import Base


class User(Base):
    """Represents a dashboard user."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True)
    name = Column(String)
    role = Column(String)  # member/admin/super_admin
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=True)
