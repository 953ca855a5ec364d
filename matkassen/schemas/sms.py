"""
Pydantic schemas for SMS-related API operations.
"""
from typing import Dict, List, Optional
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator


class SmsStatus(str, Enum):
    """Lifecycle statuses of an outbound SMS."""
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    RETRYING = "retrying"
    FAILED = "failed"
    DELIVERED = "delivered"
    NOT_DELIVERED = "not_delivered"
    CANCELLED = "cancelled"


class SmsIntent(str, Enum):
    """Why a message is sent."""
    PICKUP_REMINDER = "pickup_reminder"
    PICKUP_UPDATED = "pickup_updated"
    PICKUP_CANCELLED = "pickup_cancelled"
    CONSENT_ENROLMENT = "consent_enrolment"
    ENROLMENT = "enrolment"


class ProviderCallbackStatus(str, Enum):
    """Statuses a provider delivery callback may report."""
    DELIVERED = "delivered"
    FAILED = "failed"
    NOT_DELIVERED = "not delivered"


class FailureListStatus(str, Enum):
    """Filter for the failure list."""
    ACTIVE = "active"
    DISMISSED = "dismissed"


class SmsCreate(BaseModel):
    """Schema for enqueueing a new SMS."""
    phone_number: str = Field(..., description="Recipient phone number, E.164 or Swedish national format")
    text: str = Field(..., description="Message content")
    intent: SmsIntent = Field(..., description="Why the message is sent")
    parcel_id: Optional[str] = Field(None, description="Food parcel the message concerns")
    household_id: Optional[str] = Field(None, description="Household the message is addressed to")
    idempotency_key: Optional[str] = Field(None, description="Deduplication key; derived when omitted")

    @field_validator("text")
    @classmethod
    def validate_text(cls, v):
        """Validate message content."""
        if not v or len(v.strip()) == 0:
            raise ValueError("Message cannot be empty")
        if len(v) > 1600:  # Allow for multi-part SMS
            raise ValueError("Message exceeds maximum length of 1600 characters")
        return v


class SmsResponse(BaseModel):
    """Schema for SMS record response."""
    id: str = Field(..., description="SMS ID")
    intent: str = Field(..., description="Why the message is sent")
    parcel_id: Optional[str] = None
    household_id: Optional[str] = None
    to_e164: str = Field(..., description="Recipient phone number")
    text: str = Field(..., description="Message content")
    status: SmsStatus = Field(..., description="Current status")
    retry_count: int = Field(0, description="Failed send attempts so far")
    provider_message_id: Optional[str] = Field(None, description="ID assigned by the SMS provider")
    provider_status: Optional[str] = Field(None, description="Last status reported by the provider")
    provider_status_updated_at: Optional[datetime] = None
    last_error_message: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    dismissed_at: Optional[datetime] = None
    dismissed_by_user_id: Optional[str] = None
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")

    model_config = ConfigDict(from_attributes=True)


class SmsFailureResponse(BaseModel):
    """Failed SMS as shown to staff, with phone numbers redacted from errors."""
    id: str
    intent: str
    parcel_id: Optional[str] = None
    household_id: Optional[str] = None
    status: SmsStatus
    retry_count: int
    error_message: Optional[str] = None
    provider_status: Optional[str] = None
    failed_at: Optional[datetime] = None
    dismissed_at: Optional[datetime] = None
    created_at: datetime


class DismissRequest(BaseModel):
    """Schema for dismissing or restoring a failure."""
    dismissed: bool = Field(..., description="True to dismiss, False to restore")


class SimulateCallbackRequest(BaseModel):
    """Schema for synthesizing a provider callback in test environments."""
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(..., alias="messageId", description="SMS ID (not the provider ID)")
    delivered: bool = Field(..., description="Simulate a delivered (True) or failed (False) report")


class ProcessQueueResponse(BaseModel):
    """Result of a manual queue processing trigger."""
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str
    processed_count: int = Field(0, alias="processedCount")
    lock_acquired: bool = Field(False, alias="lockAcquired")


class SmsStatistics(BaseModel):
    """Counts of SMS records per status."""
    total: int
    by_status: Dict[str, int]


class ParcelSmsHistory(BaseModel):
    """Every message sent for one parcel, newest first."""
    parcel_id: str
    records: List[SmsResponse]
    reminder_exists: bool = Field(..., description="Whether a pickup reminder was ever queued for the parcel")
    test_mode: bool = Field(..., description="Whether the provider runs in test mode")
