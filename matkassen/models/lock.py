"""
Database model for lease-based processing locks.
"""
from sqlalchemy import Column, DateTime, String

from matkassen.models.base import Base


class ProcessingLock(Base):
    """
    A named lease. The row's existence means the lock is held by ``holder``
    until ``expires_at``; an expired row may be taken over.
    """

    holder = Column(String, nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
