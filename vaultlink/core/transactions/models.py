"""
Transaction lifecycle models.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..artifact import SignedArtifact
from ..multisig.models import MultiSigPolicy
from ..recovery.errors import ClassifiedError


class TransactionStatus(str, Enum):
    """Lifecycle states of a transaction record."""
    PENDING = "pending"            # Prepared, not yet signed
    SIGNING = "signing"            # Signing in progress or signatures being collected
    BROADCASTING = "broadcasting"  # Submitted to the ledger
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    TransactionStatus.CONFIRMED,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
})


class TransactionIntent(BaseModel):
    """What the caller wants to do: move `amount` of `asset` to `recipient`."""

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    recipient: str = Field(min_length=1, description="Ledger identity receiving the funds")
    amount: Decimal = Field(description="Amount in whole units of the asset")
    asset: str = Field(default="STX", min_length=1)
    memo: str = Field(default="")
    sender: Optional[str] = Field(default=None, description="Signing account; defaults to the connected address")
    nonce: Optional[int] = Field(default=None, ge=0)
    chain_id: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def _positive_amount(cls, value: Decimal) -> Decimal:
        if not value.is_finite():
            raise ValueError("Amount must be a finite number")
        if value <= 0:
            raise ValueError("Amount must be greater than zero")
        return value

    def payload(self) -> Dict[str, Any]:
        """Canonical content of the intent; this is what gets signed and fingerprinted."""
        return {
            "recipient": self.recipient,
            "amount": format(self.amount.normalize(), "f"),
            "asset": self.asset,
            "memo": self.memo,
            "sender": self.sender,
            "nonce": self.nonce,
            "chainId": self.chain_id,
        }


@dataclass
class StateTransition:
    """Record of a status change."""
    from_status: TransactionStatus
    to_status: TransactionStatus
    timestamp: float
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_status.value,
            "to": self.to_status.value,
            "timestamp": int(self.timestamp * 1000),
            "reason": self.reason,
        }


@dataclass
class TransactionRecord:
    """One attempted transfer, keyed by its fingerprint."""
    fingerprint: str
    intent: TransactionIntent
    created_at: float
    updated_at: float
    status: TransactionStatus = TransactionStatus.PENDING
    retry_count: int = 0
    last_error: Optional[ClassifiedError] = None
    signed_artifact: Optional[SignedArtifact] = None
    transaction_id: Optional[str] = None
    policy: Optional[MultiSigPolicy] = None  # Set when signing starts; None = single signer
    nonce_override: Optional[int] = None     # Refreshed nonce after a conflict
    history: List[StateTransition] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_signed(self) -> bool:
        return self.signed_artifact is not None

    def payload(self) -> Dict[str, Any]:
        """What the signer signs. The fingerprint stays that of the original intent."""
        payload = {**self.intent.payload(), "fingerprint": self.fingerprint}
        if self.nonce_override is not None:
            payload["nonce"] = self.nonce_override
        return payload

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "intent": self.intent.payload(),
            "status": self.status.value,
            "retryCount": self.retry_count,
            "createdAt": int(self.created_at * 1000),
            "updatedAt": int(self.updated_at * 1000),
            "lastError": self.last_error.to_dict() if self.last_error else None,
            "signedArtifact": self.signed_artifact.to_dict() if self.signed_artifact else None,
            "transactionId": self.transaction_id,
            "policy": self.policy.to_dict() if self.policy else None,
            "history": [t.to_dict() for t in self.history],
        }


@dataclass(frozen=True)
class SignResult:
    """
    Outcome of sign().

    status is "signed" when the artifact is final, "pending" while a
    multi-signature collection is still short of its threshold.
    """
    status: str
    record: TransactionRecord
    current_signatures: int
    required_signatures: int
    remaining_signers: List[str] = field(default_factory=list)

    @property
    def is_signed(self) -> bool:
        return self.status == "signed"

    @property
    def artifact(self) -> Optional[SignedArtifact]:
        return self.record.signed_artifact

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "fingerprint": self.record.fingerprint,
            "currentSignatures": self.current_signatures,
            "requiredSignatures": self.required_signatures,
            "remainingSigners": list(self.remaining_signers),
            "artifact": self.artifact.to_dict() if self.artifact else None,
        }


@dataclass(frozen=True)
class BroadcastReceipt:
    """What the ledger said about a submitted artifact."""
    accepted: bool
    transaction_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "transactionId": self.transaction_id,
            "error": self.error,
        }


@dataclass
class BatchItemResult:
    index: int
    status: str                          # "signed", "pending" or "failed"
    fingerprint: Optional[str] = None
    error: Optional[ClassifiedError] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "status": self.status,
            "fingerprint": self.fingerprint,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass(frozen=True)
class BatchProgress:
    batch_id: str
    progress: float                      # 0-100
    message: str
    total_signed: int = 0
    total_pending: int = 0
    total_failed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "progress": self.progress,
            "message": self.message,
            "totalSigned": self.total_signed,
            "totalPending": self.total_pending,
            "totalFailed": self.total_failed,
        }


@dataclass
class BatchResult:
    batch_id: str
    items: List[BatchItemResult] = field(default_factory=list)

    @property
    def total_signed(self) -> int:
        return sum(1 for item in self.items if item.status == "signed")

    @property
    def total_pending(self) -> int:
        return sum(1 for item in self.items if item.status == "pending")

    @property
    def total_failed(self) -> int:
        return sum(1 for item in self.items if item.status == "failed")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "totalSigned": self.total_signed,
            "totalPending": self.total_pending,
            "totalFailed": self.total_failed,
            "items": [item.to_dict() for item in self.items],
        }
