"""
Connection session models.

A ConnectionSession is the single live binding between the application and
a signing agent. Readers only ever see ConnectionState snapshots.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ..recovery.errors import ClassifiedError


class ConnectionStatus(str, Enum):
    """Lifecycle states of the wallet connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    UNKNOWN = "unknown"  # Persisted session present but not verifiable


def _ms(ts: Optional[float]) -> Optional[int]:
    return int(ts * 1000) if ts is not None else None


def _seconds(ms: Optional[Any]) -> Optional[float]:
    return float(ms) / 1000 if ms is not None else None


@dataclass
class ConnectionSession:
    """
    The mutable session record owned by the connection state machine.

    Timestamps are epoch seconds from the machine's clock.
    """
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    provider_id: Optional[str] = None
    address: Optional[str] = None
    public_key: Optional[str] = None
    chain_id: Optional[str] = None
    connected_at: Optional[float] = None
    expires_at: Optional[float] = None
    last_error: Optional[ClassifiedError] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def snapshot(self) -> "ConnectionState":
        return ConnectionState(
            status=self.status,
            provider_id=self.provider_id,
            address=self.address,
            public_key=self.public_key,
            chain_id=self.chain_id,
            connected_at=self.connected_at,
            expires_at=self.expires_at,
            last_error=self.last_error,
            metadata=copy.deepcopy(self.metadata),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Persisted form. Errors are never persisted."""
        return {
            "status": self.status.value,
            "providerId": self.provider_id,
            "address": self.address,
            "publicKey": self.public_key,
            "chainId": self.chain_id,
            "connectedAt": _ms(self.connected_at),
            "expiresAt": _ms(self.expires_at),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionSession":
        return cls(
            status=ConnectionStatus(data.get("status", ConnectionStatus.DISCONNECTED.value)),
            provider_id=data.get("providerId"),
            address=data.get("address"),
            public_key=data.get("publicKey"),
            chain_id=data.get("chainId"),
            connected_at=_seconds(data.get("connectedAt")),
            expires_at=_seconds(data.get("expiresAt")),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class ConnectionState:
    """Read-only copy of the session handed to callers and listeners."""
    status: ConnectionStatus
    provider_id: Optional[str] = None
    address: Optional[str] = None
    public_key: Optional[str] = None
    chain_id: Optional[str] = None
    connected_at: Optional[float] = None
    expires_at: Optional[float] = None
    last_error: Optional[ClassifiedError] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "providerId": self.provider_id,
            "address": self.address,
            "publicKey": self.public_key,
            "chainId": self.chain_id,
            "connectedAt": _ms(self.connected_at),
            "expiresAt": _ms(self.expires_at),
            "lastError": self.last_error.to_dict() if self.last_error else None,
            "metadata": self.metadata,
        }


@dataclass
class ConnectionMetrics:
    """Counters for connect attempts."""
    attempts: int = 0
    failures: int = 0
    cache_hits: int = 0
    reconnects: int = 0
    last_attempt_at: Optional[float] = None
    last_success_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempts": self.attempts,
            "failures": self.failures,
            "cacheHits": self.cache_hits,
            "reconnects": self.reconnects,
            "lastAttemptAt": _ms(self.last_attempt_at),
            "lastSuccessAt": _ms(self.last_success_at),
        }
