from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class SignedArtifact:
    """
    The final signed form of a transaction.

    `signatures` maps signer identity to signature, in signer-set order.
    A single-signer artifact has exactly one entry and threshold 1.
    """
    fingerprint: str
    payload: Dict[str, Any]
    signatures: Dict[str, str]
    threshold: int = 1
    signed_at: Optional[float] = None
    provider_id: Optional[str] = None
    public_keys: Dict[str, str] = field(default_factory=dict)

    @property
    def signers(self) -> List[str]:
        return list(self.signatures)

    @property
    def signature(self) -> str:
        """First signature; the only one for single-signer artifacts."""
        return next(iter(self.signatures.values()))

    @property
    def is_multisig(self) -> bool:
        return self.threshold > 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "payload": self.payload,
            "signatures": [
                {"signer": signer, "signature": sig, "publicKey": self.public_keys.get(signer)}
                for signer, sig in self.signatures.items()
            ],
            "threshold": self.threshold,
            "signedAt": int(self.signed_at * 1000) if self.signed_at is not None else None,
            "providerId": self.provider_id,
        }
