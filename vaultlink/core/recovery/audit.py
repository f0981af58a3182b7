"""
Error Audit Log

Bounded in-memory record of classified errors for later statistics.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from .errors import ClassifiedError, ErrorKind


@dataclass
class ErrorRecord:
    """One classified error as seen by the audit log."""

    kind: ErrorKind
    message: Optional[str]            # raw detail, never shown to users
    friendly_message: str
    recoverable: bool
    provider_id: Optional[str] = None
    operation: Optional[str] = None
    fingerprint: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_error(cls, error: ClassifiedError) -> "ErrorRecord":
        return cls(
            kind=error.kind,
            message=error.detail,
            friendly_message=error.friendly_message,
            recoverable=error.recoverable,
            provider_id=error.provider_id,
            operation=error.operation,
            fingerprint=error.fingerprint,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "friendlyMessage": self.friendly_message,
            "recoverable": self.recoverable,
            "providerId": self.provider_id,
            "operation": self.operation,
            "fingerprint": self.fingerprint,
            "timestamp": self.timestamp.isoformat(),
        }


class ErrorAuditLog:
    """Keeps the newest `max_entries` errors; older ones are evicted first."""

    def __init__(self, max_entries: int = 1000):
        self.max_entries = max_entries
        self._entries: Deque[ErrorRecord] = deque(maxlen=max_entries)

    def append(self, error: ClassifiedError) -> ErrorRecord:
        record = ErrorRecord.from_error(error)
        self._entries.append(record)
        return record

    def recent(self, limit: int = 10) -> List[ErrorRecord]:
        if limit <= 0:
            return []
        return list(self._entries)[-limit:]

    def get_statistics(self) -> Dict[str, Any]:
        by_kind: Dict[str, int] = {}
        by_provider: Dict[str, int] = {}
        recoverable = 0

        for entry in self._entries:
            by_kind[entry.kind.value] = by_kind.get(entry.kind.value, 0) + 1
            provider = entry.provider_id or "unknown"
            by_provider[provider] = by_provider.get(provider, 0) + 1
            if entry.recoverable:
                recoverable += 1

        return {
            "totalErrors": len(self._entries),
            "byKind": by_kind,
            "byProvider": by_provider,
            "recoverable": recoverable,
            "unrecoverable": len(self._entries) - recoverable,
        }

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
