"""
Transaction state transitions.

    pending -> signing -> broadcasting -> confirmed
       |          |             \\-> failed
       |          \\-> cancelled | failed
       \\-> cancelled | failed

Terminal states have no outgoing transitions.
"""

from typing import Dict, FrozenSet, Optional

from ..recovery.errors import invalid_request
from .models import StateTransition, TransactionRecord, TransactionStatus


TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset({
        TransactionStatus.SIGNING,
        TransactionStatus.CANCELLED,
        TransactionStatus.FAILED,
    }),
    TransactionStatus.SIGNING: frozenset({
        TransactionStatus.SIGNING,       # Another signature collected
        TransactionStatus.BROADCASTING,
        TransactionStatus.CANCELLED,
        TransactionStatus.FAILED,
    }),
    TransactionStatus.BROADCASTING: frozenset({
        TransactionStatus.CONFIRMED,
        TransactionStatus.FAILED,
    }),
    TransactionStatus.CONFIRMED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
}


def can_transition(from_status: TransactionStatus, to_status: TransactionStatus) -> bool:
    return to_status in TRANSITIONS.get(from_status, frozenset())


def transition(
    record: TransactionRecord,
    to_status: TransactionStatus,
    now: float,
    reason: Optional[str] = None,
) -> StateTransition:
    """
    Move a record to a new status and append the change to its history.

    Raises:
        ClassifiedError(invalid_request): the transition is not allowed
    """
    if not can_transition(record.status, to_status):
        raise invalid_request(
            f"Invalid transition from {record.status.value} to {to_status.value}",
            fingerprint=record.fingerprint,
        )

    change = StateTransition(
        from_status=record.status,
        to_status=to_status,
        timestamp=now,
        reason=reason,
    )
    record.status = to_status
    record.updated_at = now
    record.history.append(change)
    return change
