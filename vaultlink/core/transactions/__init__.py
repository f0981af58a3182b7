"""
Transaction Lifecycle Module

Intent validation, fingerprinting, the pending -> signing -> broadcasting
-> confirmed state machine, ledger broadcast, and batch signing.
"""

from .models import (
    TransactionStatus,
    TERMINAL_STATUSES,
    TransactionIntent,
    TransactionRecord,
    StateTransition,
    SignResult,
    BroadcastReceipt,
    BatchItemResult,
    BatchProgress,
    BatchResult,
)
from .validation import validate_intent
from .fingerprint import fingerprint_intent
from .lifecycle import TRANSITIONS, can_transition, transition
from .broadcast import BroadcastEndpoint, BroadcastRejectedError, HttpBroadcastEndpoint
from .recovery_store import PendingBroadcast, PendingTransactionStore
from .pipeline import TransactionPipeline, NonceRefresher
from .batch import BatchSigner

__all__ = [
    # Models
    "TransactionStatus",
    "TERMINAL_STATUSES",
    "TransactionIntent",
    "TransactionRecord",
    "StateTransition",
    "SignResult",
    "BroadcastReceipt",
    "BatchItemResult",
    "BatchProgress",
    "BatchResult",
    # Validation
    "validate_intent",
    "fingerprint_intent",
    # Lifecycle
    "TRANSITIONS",
    "can_transition",
    "transition",
    # Broadcast
    "BroadcastEndpoint",
    "BroadcastRejectedError",
    "HttpBroadcastEndpoint",
    "PendingBroadcast",
    "PendingTransactionStore",
    # Pipeline
    "TransactionPipeline",
    "NonceRefresher",
    "BatchSigner",
]
