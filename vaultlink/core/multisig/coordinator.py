"""
Multi-Signature Coordinator

Collects signatures for a fingerprint until its policy's threshold is met,
then combines them into one SignedArtifact. Every check-then-write on a
fingerprint runs under that fingerprint's lock, so two submissions that
both see `threshold - 1` signatures cannot both finalize.

Closed collections (finalized, cancelled, expired) leave a tombstone so
late submissions are rejected with the right reason instead of silently
opening a new collection.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ...config import Settings, settings as default_settings
from ..artifact import SignedArtifact
from ..events import EventBus, EventType
from ..locks import KeyedLock
from ..recovery.errors import invalid_request
from .models import (
    CollectionState,
    MultiSigPolicy,
    MultiSigStatus,
    PendingMultiSigTransaction,
    SubmissionResult,
)


logger = logging.getLogger(__name__)


@dataclass
class _Tombstone:
    state: CollectionState
    closed_at: float
    artifact: Optional[SignedArtifact] = None


class MultiSigCoordinator:
    def __init__(
        self,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.events = events if events is not None else EventBus()
        self.settings = settings or default_settings
        self._clock = clock
        self._open: Dict[str, PendingMultiSigTransaction] = {}
        self._closed: Dict[str, _Tombstone] = {}
        self._locks = KeyedLock()
        self._counts = {state: 0 for state in CollectionState}

    async def submit_signature(
        self,
        fingerprint: str,
        signer: str,
        signature: str,
        policy: MultiSigPolicy,
        payload: Optional[Dict[str, Any]] = None,
        public_key: Optional[str] = None,
    ) -> SubmissionResult:
        """
        Add one signer's signature to the collection for `fingerprint`.

        A repeated submission from the same signer replaces the earlier one.

        Raises:
            ClassifiedError(invalid_request): signer not in the signer set, or
                the collection is already finalized, expired, or cancelled
        """
        async with self._locks.hold(fingerprint):
            now = self._clock()

            tombstone = self._closed.get(fingerprint)
            if tombstone is not None:
                raise invalid_request(
                    f"Signature collection is already {tombstone.state.value}",
                    fingerprint=fingerprint,
                )

            record = self._open.get(fingerprint)
            if record is not None and record.is_expired(now):
                self._close(record, CollectionState.EXPIRED, now)
                raise invalid_request(
                    f"Signature collection is already {CollectionState.EXPIRED.value}",
                    fingerprint=fingerprint,
                )

            signer_set = record.signer_set if record is not None else policy.signer_set
            if signer not in signer_set:
                raise invalid_request(
                    f"{signer} is not an approver for this transaction",
                    fingerprint=fingerprint,
                )

            if record is None:
                record = PendingMultiSigTransaction(
                    fingerprint=fingerprint,
                    required_signatures=policy.threshold,
                    signer_set=policy.signer_set,
                    created_at=now,
                    expires_at=now + self.settings.multisig_expiry_seconds,
                    payload=dict(payload or {}),
                )
                self._open[fingerprint] = record
                self._counts[CollectionState.COLLECTING] += 1
                logger.info(
                    f"Opened {policy.threshold}-of-{policy.total_signers} collection for {fingerprint[:12]}"
                )

            replaced = signer in record.collected_signatures
            if replaced:
                logger.info(f"Replacing signature from {signer} for {fingerprint[:12]}")
            record.collected_signatures[signer] = signature
            if public_key:
                record.public_keys[signer] = public_key

            if record.current_signatures < record.required_signatures:
                self._publish(record)
                return SubmissionResult(
                    status="pending",
                    fingerprint=fingerprint,
                    current_signatures=record.current_signatures,
                    required_signatures=record.required_signatures,
                    remaining_signers=record.remaining_signers,
                    replaced=replaced,
                )

            artifact = self._combine(record, now)
            self._close(record, CollectionState.FINALIZED, now, artifact)
            logger.info(
                f"Collected {record.current_signatures}/{record.required_signatures} "
                f"signatures for {fingerprint[:12]}; finalized"
            )
            return SubmissionResult(
                status="signed",
                fingerprint=fingerprint,
                current_signatures=record.current_signatures,
                required_signatures=record.required_signatures,
                artifact=artifact,
                replaced=replaced,
            )

    def _combine(self, record: PendingMultiSigTransaction, now: float) -> SignedArtifact:
        signatures = {
            signer: record.collected_signatures[signer]
            for signer in record.signer_set
            if signer in record.collected_signatures
        }
        return SignedArtifact(
            fingerprint=record.fingerprint,
            payload=dict(record.payload),
            signatures=signatures,
            threshold=record.required_signatures,
            signed_at=now,
            public_keys=dict(record.public_keys),
        )

    def _close(
        self,
        record: PendingMultiSigTransaction,
        state: CollectionState,
        now: float,
        artifact: Optional[SignedArtifact] = None,
    ) -> None:
        record.state = state
        self._open.pop(record.fingerprint, None)
        self._closed[record.fingerprint] = _Tombstone(state=state, closed_at=now, artifact=artifact)
        self._counts[state] += 1
        self._publish(record)

    def _publish(self, record: PendingMultiSigTransaction) -> None:
        self.events.publish(EventType.MULTISIG_PROGRESS, record.status())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_status(self, fingerprint: str) -> Optional[MultiSigStatus]:
        """Progress of an open collection, or None when there is none."""
        record = self._open.get(fingerprint)
        if record is None or record.is_expired(self._clock()):
            return None
        return record.status()

    def list_pending(self) -> List[str]:
        now = self._clock()
        return [fp for fp, record in self._open.items() if not record.is_expired(now)]

    def closed_state(self, fingerprint: str) -> Optional[CollectionState]:
        tombstone = self._closed.get(fingerprint)
        return tombstone.state if tombstone else None

    def get_statistics(self) -> Dict[str, int]:
        return {
            "active": len(self.list_pending()),
            "total": self._counts[CollectionState.COLLECTING],
            "finalized": self._counts[CollectionState.FINALIZED],
            "cancelled": self._counts[CollectionState.CANCELLED],
            "expired": self._counts[CollectionState.EXPIRED],
        }

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def cancel(self, fingerprint: str) -> bool:
        """Cancel an open collection. Returns False when none is open."""
        async with self._locks.hold(fingerprint):
            record = self._open.get(fingerprint)
            if record is None:
                return False
            self._close(record, CollectionState.CANCELLED, self._clock())
            logger.info(f"Cancelled signature collection for {fingerprint[:12]}")
            return True

    async def release(self, fingerprint: str) -> None:
        """Forget a closed collection so the fingerprint can be collected again."""
        async with self._locks.hold(fingerprint):
            self._closed.pop(fingerprint, None)

    async def sweep_expired(self) -> List[str]:
        """Expire overdue collections and drop old tombstones."""
        now = self._clock()
        expired: List[str] = []

        for fingerprint in list(self._open):
            async with self._locks.hold(fingerprint):
                record = self._open.get(fingerprint)
                if record is not None and record.is_expired(now):
                    self._close(record, CollectionState.EXPIRED, now)
                    expired.append(fingerprint)

        horizon = now - self.settings.multisig_tombstone_ttl_seconds
        for fingerprint, tombstone in list(self._closed.items()):
            if tombstone.closed_at < horizon:
                del self._closed[fingerprint]

        if expired:
            logger.info(f"Expired {len(expired)} signature collections")
        return expired

    def reset(self) -> None:
        self._open.clear()
        self._closed.clear()
        self._counts = {state: 0 for state in CollectionState}
