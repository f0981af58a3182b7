"""
Pending-recovery store.

Holds signed artifacts whose broadcast has started but not been confirmed,
so an interrupted broadcast can be inspected and resubmitted.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..artifact import SignedArtifact


logger = logging.getLogger(__name__)


@dataclass
class PendingBroadcast:
    artifact: SignedArtifact
    stored_at: float
    attempts: int = 0

    @property
    def fingerprint(self) -> str:
        return self.artifact.fingerprint

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "artifact": self.artifact.to_dict(),
            "storedAt": int(self.stored_at * 1000),
            "attempts": self.attempts,
        }


class PendingTransactionStore:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: Dict[str, PendingBroadcast] = {}

    def add(self, artifact: SignedArtifact) -> PendingBroadcast:
        entry = self._entries.get(artifact.fingerprint)
        if entry is None:
            entry = PendingBroadcast(artifact=artifact, stored_at=self._clock())
            self._entries[artifact.fingerprint] = entry
        entry.attempts += 1
        return entry

    def remove(self, fingerprint: str) -> bool:
        return self._entries.pop(fingerprint, None) is not None

    def get(self, fingerprint: str) -> Optional[PendingBroadcast]:
        return self._entries.get(fingerprint)

    def entries(self) -> List[PendingBroadcast]:
        return sorted(self._entries.values(), key=lambda e: e.stored_at)

    def clear_older_than(self, max_age: float) -> int:
        """Drop entries stored more than `max_age` seconds ago."""
        cutoff = self._clock() - max_age
        stale = [fp for fp, entry in self._entries.items() if entry.stored_at < cutoff]
        for fingerprint in stale:
            del self._entries[fingerprint]
        if stale:
            logger.info(f"Cleared {len(stale)} stale pending broadcasts")
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._entries
