"""
Multi-Signature Module

Threshold policies, approver roster editing, and the coordinator that
collects signatures per transaction fingerprint.
"""

from .models import (
    CollectionState,
    MultiSigPolicy,
    MultiSigStatus,
    PendingMultiSigTransaction,
    SubmissionResult,
    WalletPolicyDraft,
)
from .roster import add_approver, remove_approver, set_threshold, configure
from .policy_book import PolicyBook
from .coordinator import MultiSigCoordinator

__all__ = [
    # Models
    "CollectionState",
    "MultiSigPolicy",
    "MultiSigStatus",
    "PendingMultiSigTransaction",
    "SubmissionResult",
    "WalletPolicyDraft",
    # Roster
    "add_approver",
    "remove_approver",
    "set_threshold",
    "configure",
    # Coordination
    "PolicyBook",
    "MultiSigCoordinator",
]
