"""
Database model for outbound SMS records.
"""
from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from matkassen.models.base import Base


class SmsMessage(Base):
    """
    One outbound SMS and its delivery lifecycle.

    Rows are never deleted. ``retry_count`` only ever grows, and at most
    one of ``delivered_at`` / ``failed_at`` is set at any time.
    """

    intent = Column(String, nullable=False)
    parcel_id = Column(String, nullable=True, index=True)
    household_id = Column(String, nullable=True, index=True)
    to_e164 = Column(String, nullable=False)
    text = Column(Text, nullable=False)

    status = Column(String, nullable=False, default="queued", index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_error_message = Column(Text, nullable=True)
    idempotency_key = Column(String, nullable=False, unique=True)

    # Provider side
    provider_message_id = Column(String, nullable=True, unique=True)
    provider_status = Column(String, nullable=True)
    provider_status_updated_at = Column(DateTime(timezone=True), nullable=True)

    # Scheduling
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)

    # Transition timestamps
    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # Operator dismissal of a failure
    dismissed_at = Column(DateTime(timezone=True), nullable=True)
    dismissed_by_user_id = Column(String, nullable=True)

    __table_args__ = (
        Index("ix_smsmessage_status_next_attempt", "status", "next_attempt_at"),
    )
