"""
Database models for staff accounts.
"""
from sqlalchemy import Boolean, Column, String

from matkassen.models.base import Base


class User(Base):
    """Staff user allowed to operate the SMS queue."""

    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    full_name = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    role = Column(String, default="user", nullable=False)
