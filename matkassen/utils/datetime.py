"""
Utilities for standardized datetime handling.
"""
from datetime import datetime, timezone
from typing import Optional

def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.
    
    Returns:
        datetime: Current UTC time
    """
    return datetime.now(timezone.utc)

def ensure_utc(dt: datetime) -> datetime:
    """
    Ensure datetime is UTC timezone-aware.

    Some backends (SQLite) hand back naive values; those are stored as UTC.
    
    Args:
        dt: Datetime to process
        
    Returns:
        datetime: UTC timezone-aware datetime
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    
    return dt.astimezone(timezone.utc)

def format_datetime(dt: Optional[datetime] = None) -> str:
    """
    Format datetime as ISO 8601 string.
    
    Args:
        dt: Datetime to format (defaults to current UTC time)
        
    Returns:
        str: ISO 8601 formatted string
    """
    if dt is None:
        dt = utc_now()
    return ensure_utc(dt).isoformat()

def from_epoch_ms(value: float) -> datetime:
    """Convert a millisecond epoch timestamp to an aware UTC datetime."""
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
