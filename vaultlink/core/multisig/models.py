"""
Multi-signature models.

A MultiSigPolicy says who may sign for an account and how many of them must;
a PendingMultiSigTransaction tracks one fingerprint's collection against it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..artifact import SignedArtifact
from ..recovery.errors import invalid_request


class CollectionState(str, Enum):
    """State of a signature collection."""
    COLLECTING = "collecting"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


@dataclass(frozen=True)
class MultiSigPolicy:
    """Threshold policy for one signing account."""
    threshold: int
    signer_set: Tuple[str, ...]
    owner: Optional[str] = None

    def __post_init__(self):
        if len(set(self.signer_set)) != len(self.signer_set):
            raise invalid_request("Signer set contains duplicates")
        if self.threshold < 1:
            raise invalid_request("Threshold must be at least 1")
        if self.threshold > len(self.signer_set):
            raise invalid_request("Threshold cannot be greater than total signers")

    @classmethod
    def of(cls, threshold: int, signers: Sequence[str], owner: Optional[str] = None) -> "MultiSigPolicy":
        return cls(threshold=threshold, signer_set=tuple(signers), owner=owner)

    @property
    def total_signers(self) -> int:
        return len(self.signer_set)

    @property
    def requires_multiple(self) -> bool:
        return self.threshold > 1

    def allows(self, signer: str) -> bool:
        return signer in self.signer_set

    def to_dict(self) -> Dict[str, Any]:
        return {
            "threshold": self.threshold,
            "signerSet": list(self.signer_set),
            "owner": self.owner,
        }


@dataclass
class WalletPolicyDraft:
    """
    An approver roster that has not been configured yet.

    The owner always counts as a signer on top of the approvers.
    """
    owner: str
    approvers: List[str] = field(default_factory=list)
    threshold: int = 1
    configured: bool = False

    @property
    def total_signers(self) -> int:
        return len(self.approvers) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "approvers": list(self.approvers),
            "threshold": self.threshold,
            "configured": self.configured,
        }


@dataclass
class PendingMultiSigTransaction:
    """In-progress signature collection for one fingerprint."""
    fingerprint: str
    required_signatures: int
    signer_set: Tuple[str, ...]
    created_at: float
    expires_at: float
    collected_signatures: Dict[str, str] = field(default_factory=dict)
    state: CollectionState = CollectionState.COLLECTING
    payload: Dict[str, Any] = field(default_factory=dict)
    public_keys: Dict[str, str] = field(default_factory=dict)

    @property
    def current_signatures(self) -> int:
        return len(self.collected_signatures)

    @property
    def remaining_signers(self) -> List[str]:
        return [s for s in self.signer_set if s not in self.collected_signatures]

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def status(self) -> "MultiSigStatus":
        return MultiSigStatus(
            fingerprint=self.fingerprint,
            collected=self.current_signatures,
            required=self.required_signatures,
            remaining_signers=self.remaining_signers,
            expires_at=self.expires_at,
            state=self.state,
        )


@dataclass(frozen=True)
class MultiSigStatus:
    fingerprint: str
    collected: int
    required: int
    remaining_signers: List[str]
    expires_at: float
    state: CollectionState = CollectionState.COLLECTING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "collected": self.collected,
            "required": self.required,
            "remainingSigners": list(self.remaining_signers),
            "expiresAt": int(self.expires_at * 1000),
            "state": self.state.value,
        }


@dataclass(frozen=True)
class SubmissionResult:
    """Outcome of one signature submission."""
    status: str                               # "pending" or "signed"
    fingerprint: str
    current_signatures: int
    required_signatures: int
    remaining_signers: List[str] = field(default_factory=list)
    artifact: Optional[SignedArtifact] = None
    replaced: bool = False                    # signer had already submitted

    @property
    def is_signed(self) -> bool:
        return self.status == "signed"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "status": self.status,
            "fingerprint": self.fingerprint,
            "currentSignatures": self.current_signatures,
            "requiredSignatures": self.required_signatures,
            "remainingSigners": list(self.remaining_signers),
        }
        if self.artifact is not None:
            data["artifact"] = self.artifact.to_dict()
        return data
