"""
SMS lifecycle rules.

The queue processor owns queued/sending/sent/retrying/failed transitions;
provider callbacks own delivered/not_delivered. Both go through the table
below before writing.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Optional

from matkassen.schemas.sms import ProviderCallbackStatus, SmsStatus

ALLOWED_TRANSITIONS: Dict[SmsStatus, FrozenSet[SmsStatus]] = {
    SmsStatus.QUEUED: frozenset({SmsStatus.SENDING, SmsStatus.CANCELLED}),
    SmsStatus.SENDING: frozenset({SmsStatus.SENT, SmsStatus.RETRYING, SmsStatus.FAILED}),
    SmsStatus.RETRYING: frozenset({SmsStatus.SENDING, SmsStatus.CANCELLED, SmsStatus.NOT_DELIVERED}),
    SmsStatus.SENT: frozenset({SmsStatus.DELIVERED, SmsStatus.NOT_DELIVERED}),
    SmsStatus.FAILED: frozenset({SmsStatus.QUEUED, SmsStatus.NOT_DELIVERED}),
    SmsStatus.DELIVERED: frozenset(),
    SmsStatus.NOT_DELIVERED: frozenset(),
    SmsStatus.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)

# Rows the queue processor picks up
PENDING_STATES = (SmsStatus.QUEUED, SmsStatus.RETRYING)

# Rows a provider callback may update
CALLBACK_SOURCE_STATES = frozenset({SmsStatus.SENT, SmsStatus.RETRYING, SmsStatus.FAILED})

CALLBACK_STATUS_MAP: Dict[ProviderCallbackStatus, SmsStatus] = {
    ProviderCallbackStatus.DELIVERED: SmsStatus.DELIVERED,
    ProviderCallbackStatus.FAILED: SmsStatus.NOT_DELIVERED,
    ProviderCallbackStatus.NOT_DELIVERED: SmsStatus.NOT_DELIVERED,
}


def can_transition(current: SmsStatus, target: SmsStatus) -> bool:
    """Return True if ``current -> target`` is a legal lifecycle step."""
    return SmsStatus(target) in ALLOWED_TRANSITIONS[SmsStatus(current)]


def is_terminal(status: SmsStatus) -> bool:
    return SmsStatus(status) in TERMINAL_STATES


def callback_target(status: str) -> Optional[SmsStatus]:
    """Map a raw provider status string to the status it implies, or None if unknown."""
    try:
        return CALLBACK_STATUS_MAP[ProviderCallbackStatus(status)]
    except ValueError:
        return None


@dataclass(frozen=True)
class FailureOutcome:
    """Where a message goes after a failed send attempt."""
    status: SmsStatus
    retry_count: int
    next_attempt_at: Optional[datetime]
    failed_at: Optional[datetime]


def retry_backoff(retry_count: int, base_seconds: int) -> timedelta:
    """
    Exponential backoff before the next attempt.

    Args:
        retry_count: Attempts consumed so far, including the one that just failed
        base_seconds: Delay after the first failure; 0 disables backoff

    Returns:
        timedelta: Delay before the message becomes due again
    """
    if base_seconds <= 0 or retry_count <= 0:
        return timedelta(0)
    return timedelta(seconds=base_seconds * 2 ** (retry_count - 1))


def apply_failure(
    retry_count: int,
    *,
    max_retries: int,
    backoff_seconds: int,
    now: datetime,
) -> FailureOutcome:
    """
    Apply the failure rule to a message that has used ``retry_count`` attempts.

    Every failed attempt counts. Once the incremented count reaches
    ``max_retries`` the message is permanently failed.
    """
    new_count = retry_count + 1
    if new_count >= max_retries:
        return FailureOutcome(
            status=SmsStatus.FAILED,
            retry_count=new_count,
            next_attempt_at=None,
            failed_at=now,
        )
    return FailureOutcome(
        status=SmsStatus.RETRYING,
        retry_count=new_count,
        next_attempt_at=now + retry_backoff(new_count, backoff_seconds),
        failed_at=None,
    )
