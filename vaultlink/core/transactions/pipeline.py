"""
Transaction Lifecycle Pipeline

Carries an intent from preparation to confirmation:

    prepare -> sign (single signer, or via the multi-signature coordinator)
            -> broadcast -> confirmed | failed

Mutations of a record happen under its fingerprint's lock; provider and
ledger calls happen outside it, and the record's status is re-checked
before their results are applied.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from ...config import Settings, settings as default_settings
from ..artifact import SignedArtifact
from ..events import EventBus, EventType
from ..locks import KeyedLock
from ..multisig.coordinator import MultiSigCoordinator
from ..multisig.models import CollectionState, MultiSigPolicy, SubmissionResult
from ..multisig.policy_book import PolicyBook
from ..providers.base import ProviderAdapter
from ..recovery.errors import ClassifiedError, ErrorKind, invalid_request
from ..recovery.executor import RecoveryExecutor, RetryHook, SleepFunc
from ..recovery.handler import ErrorHandler
from ..recovery.strategies import retrying_only
from ..wallet.connection import ConnectionStateMachine
from ..wallet.models import ConnectionState
from .broadcast import BroadcastEndpoint, BroadcastRejectedError
from .fingerprint import fingerprint_intent
from .lifecycle import transition
from .models import (
    BroadcastReceipt,
    SignResult,
    StateTransition,
    TransactionRecord,
    TransactionStatus,
)
from .recovery_store import PendingBroadcast, PendingTransactionStore
from .validation import IntentLike, validate_intent


logger = logging.getLogger(__name__)


# Returns a fresh nonce for a record after a nonce conflict (None = keep current)
NonceRefresher = Callable[[TransactionRecord], Awaitable[Optional[int]]]
RecordLike = Union[TransactionRecord, SignedArtifact, str]


class TransactionPipeline:
    def __init__(
        self,
        connection: ConnectionStateMachine,
        coordinator: MultiSigCoordinator,
        broadcaster: BroadcastEndpoint,
        policies: Optional[PolicyBook] = None,
        error_handler: Optional[ErrorHandler] = None,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
        sleep: SleepFunc = asyncio.sleep,
        recovery_store: Optional[PendingTransactionStore] = None,
        nonce_refresher: Optional[NonceRefresher] = None,
    ):
        self.connection = connection
        self.coordinator = coordinator
        self.broadcaster = broadcaster
        self.policies = policies if policies is not None else PolicyBook()
        self.error_handler = error_handler if error_handler is not None else ErrorHandler()
        self.events = events if events is not None else EventBus()
        self.settings = settings or default_settings
        self.recovery_store = recovery_store if recovery_store is not None else PendingTransactionStore(clock=clock)
        self._clock = clock
        self._nonce_refresher = nonce_refresher

        self._executor = RecoveryExecutor(self.error_handler, sleep=sleep)
        # Only transport failures are worth resubmitting a signed artifact for
        self._broadcast_executor = RecoveryExecutor(
            self.error_handler,
            strategies=retrying_only(ErrorKind.NETWORK_ERROR, ErrorKind.TIMEOUT),
            sleep=sleep,
        )

        self._records: Dict[str, TransactionRecord] = {}
        self._locks = KeyedLock()
        self._signing: Set[str] = set()

    # ------------------------------------------------------------------
    # Prepare
    # ------------------------------------------------------------------

    async def prepare(self, intent: IntentLike) -> TransactionRecord:
        """
        Validate an intent and create its pending record.

        Re-preparing an intent whose record is still live returns that
        record. A failed or cancelled record is superseded by a fresh one.

        Raises:
            ClassifiedError(invalid_request): validation failed (no record is
                created) or the same intent was already confirmed
        """
        try:
            parsed = validate_intent(intent, self.settings)
        except ClassifiedError as e:
            raise self.error_handler.handle(e, operation="prepare")

        fingerprint = fingerprint_intent(parsed)

        async with self._locks.hold(fingerprint):
            existing = self._records.get(fingerprint)
            if existing is not None:
                if existing.status == TransactionStatus.CONFIRMED:
                    raise self.error_handler.handle(
                        invalid_request("Transaction was already confirmed", fingerprint=fingerprint),
                        operation="prepare",
                    )
                if not existing.is_terminal:
                    return existing
                logger.info(f"Superseding {existing.status.value} transaction {fingerprint[:12]}")
                await self.coordinator.release(fingerprint)

            now = self._clock()
            record = TransactionRecord(
                fingerprint=fingerprint,
                intent=parsed,
                created_at=now,
                updated_at=now,
            )
            self._records[fingerprint] = record

        logger.info(f"Prepared transaction {fingerprint[:12]}: {parsed.amount} {parsed.asset} to {parsed.recipient}")
        self._publish(record, None)
        return record

    # ------------------------------------------------------------------
    # Sign
    # ------------------------------------------------------------------

    async def sign(self, target: RecordLike) -> SignResult:
        """
        Sign with the connected provider.

        For a multi-signature account the signature is submitted to the
        coordinator as the connected address; until the threshold is met the
        result is "pending" and the record stays in signing.
        """
        record = self._resolve(target)
        fingerprint = record.fingerprint
        session, adapter = await self._active_binding("sign_transaction", fingerprint)

        async with self._locks.hold(fingerprint):
            if record.status == TransactionStatus.SIGNING and record.is_signed:
                return self._signed_result(record)
            if record.status not in (TransactionStatus.PENDING, TransactionStatus.SIGNING):
                raise self._invalid(f"Cannot sign a {record.status.value} transaction", record, "sign_transaction")
            if fingerprint in self._signing:
                raise self._invalid("Signing is already in progress", record, "sign_transaction")

            policy = record.policy or self.policies.get(record.intent.sender or session.address)
            if policy is not None and not policy.allows(session.address):
                raise self._invalid(
                    f"{session.address} is not an approver for this wallet", record, "sign_transaction"
                )
            record.policy = policy
            if record.status == TransactionStatus.PENDING:
                self._transition(record, TransactionStatus.SIGNING, "signing started")
            self._signing.add(fingerprint)

        try:
            result = await self._executor.execute(
                lambda: adapter.sign_transaction(record.payload()),
                operation_name="sign_transaction",
                provider_id=session.provider_id,
                fingerprint=fingerprint,
                on_retry=self._retry_hook(record),
            )
        finally:
            self._signing.discard(fingerprint)

        async with self._locks.hold(fingerprint):
            if record.status != TransactionStatus.SIGNING:
                logger.warning(
                    f"Discarding signature for {fingerprint[:12]}: transaction is {record.status.value}"
                )
                raise self._invalid(
                    f"Transaction was {record.status.value} while signing", record, "sign_transaction"
                )

            if not result.success:
                await self._fail(record, result.error, "signing failed")
                raise result.error

            if record.policy is None:
                now = self._clock()
                record.signed_artifact = SignedArtifact(
                    fingerprint=fingerprint,
                    payload=record.payload(),
                    signatures={session.address: result.result},
                    threshold=1,
                    signed_at=now,
                    provider_id=session.provider_id,
                    public_keys={session.address: session.public_key},
                )
                self._transition(record, TransactionStatus.SIGNING, "signed")
                logger.info(f"Signed transaction {fingerprint[:12]} with {session.provider_id}")
                return self._signed_result(record)

            submission = await self._submit_signature(
                record,
                record.policy,
                signer=session.address,
                signature=result.result,
                public_key=session.public_key,
            )
            return self._apply_submission(record, submission)

    async def add_signature(
        self,
        target: RecordLike,
        signer: str,
        signature: str,
        public_key: Optional[str] = None,
    ) -> SignResult:
        """Submit a co-signer's signature produced outside this process."""
        record = self._resolve(target)
        fingerprint = record.fingerprint

        async with self._locks.hold(fingerprint):
            if record.status not in (TransactionStatus.PENDING, TransactionStatus.SIGNING):
                raise self._invalid(f"Cannot sign a {record.status.value} transaction", record, "add_signature")

            policy = record.policy or self.policies.get(
                record.intent.sender or self.connection.get_state().address
            )
            if policy is None:
                raise self._invalid("Transaction does not require multiple signatures", record, "add_signature")
            record.policy = policy
            if record.status == TransactionStatus.PENDING:
                self._transition(record, TransactionStatus.SIGNING, "signing started")

            submission = await self._submit_signature(record, policy, signer, signature, public_key)
            return self._apply_submission(record, submission)

    async def _submit_signature(
        self,
        record: TransactionRecord,
        policy: MultiSigPolicy,
        signer: str,
        signature: str,
        public_key: Optional[str],
    ) -> SubmissionResult:
        try:
            return await self.coordinator.submit_signature(
                record.fingerprint,
                signer,
                signature,
                policy,
                payload=record.payload(),
                public_key=public_key,
            )
        except ClassifiedError as e:
            error = self.error_handler.handle(e, operation="submit_signature", fingerprint=record.fingerprint)
            closed = self.coordinator.closed_state(record.fingerprint)
            if closed in (CollectionState.EXPIRED, CollectionState.CANCELLED) and not record.is_terminal:
                await self._fail(record, error, f"signature collection {closed.value}")
            raise error

    def _apply_submission(self, record: TransactionRecord, submission: SubmissionResult) -> SignResult:
        if submission.is_signed:
            record.signed_artifact = submission.artifact
            self._transition(record, TransactionStatus.SIGNING, "threshold reached")
            return self._signed_result(record)

        self._transition(
            record,
            TransactionStatus.SIGNING,
            f"collected {submission.current_signatures}/{submission.required_signatures} signatures",
        )
        return SignResult(
            status="pending",
            record=record,
            current_signatures=submission.current_signatures,
            required_signatures=submission.required_signatures,
            remaining_signers=submission.remaining_signers,
        )

    def _signed_result(self, record: TransactionRecord) -> SignResult:
        artifact = record.signed_artifact
        return SignResult(
            status="signed",
            record=record,
            current_signatures=len(artifact.signatures),
            required_signatures=artifact.threshold,
        )

    async def sign_message(self, text: str) -> str:
        """Sign an arbitrary message with the connected provider."""
        session, adapter = await self._active_binding("sign_message")
        result = await self._executor.execute(
            lambda: adapter.sign_message(text),
            operation_name="sign_message",
            provider_id=session.provider_id,
        )
        return result.unwrap()

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    async def broadcast(self, target: RecordLike) -> BroadcastReceipt:
        """
        Submit the signed artifact to the ledger.

        A confirmed fingerprint is never resubmitted; its receipt is
        rebuilt from the stored transaction id.
        """
        record = self._resolve(target)
        fingerprint = record.fingerprint

        async with self._locks.hold(fingerprint):
            if record.status == TransactionStatus.CONFIRMED:
                logger.info(f"Transaction {fingerprint[:12]} already confirmed; not resubmitting")
                return BroadcastReceipt(accepted=True, transaction_id=record.transaction_id)
            if record.status == TransactionStatus.BROADCASTING:
                raise self._invalid("Broadcast is already in progress", record, "broadcast")
            if record.status != TransactionStatus.SIGNING or not record.is_signed:
                raise self._invalid("Transaction is not fully signed", record, "broadcast")

            artifact = record.signed_artifact
            self._transition(record, TransactionStatus.BROADCASTING, "submitted to ledger")
            self.recovery_store.add(artifact)

        result = await self._broadcast_executor.execute(
            lambda: self._submit(artifact),
            operation_name="broadcast",
            provider_id="ledger",
            fingerprint=fingerprint,
            on_retry=self._retry_hook(record),
        )

        async with self._locks.hold(fingerprint):
            if result.success:
                receipt: BroadcastReceipt = result.result
                record.transaction_id = receipt.transaction_id
                self._transition(record, TransactionStatus.CONFIRMED, "accepted by ledger")
                self.recovery_store.remove(fingerprint)
                logger.info(f"Transaction {fingerprint[:12]} confirmed as {receipt.transaction_id}")
                return receipt

            await self._fail(record, result.error, "broadcast failed")
        raise result.error

    async def _submit(self, artifact: SignedArtifact) -> BroadcastReceipt:
        receipt = await self.broadcaster.submit(artifact)
        if not receipt.accepted:
            raise BroadcastRejectedError(receipt.error or "Broadcast rejected", receipt)
        return receipt

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def cancel(self, target: RecordLike) -> TransactionRecord:
        """Cancel a pending or signing transaction and any open collection for it."""
        record = self._resolve(target)

        async with self._locks.hold(record.fingerprint):
            if record.status not in (TransactionStatus.PENDING, TransactionStatus.SIGNING):
                raise self._invalid(f"Cannot cancel a {record.status.value} transaction", record, "cancel")
            self._transition(record, TransactionStatus.CANCELLED, "cancelled by caller")
            await self.coordinator.cancel(record.fingerprint)

        logger.info(f"Cancelled transaction {record.fingerprint[:12]}")
        return record

    async def expire_collections(self) -> List[str]:
        """Close overdue signature collections and fail the transactions still waiting on them."""
        failed: List[str] = []
        for fingerprint in await self.coordinator.sweep_expired():
            async with self._locks.hold(fingerprint):
                record = self._records.get(fingerprint)
                if record is None or record.status != TransactionStatus.SIGNING:
                    continue
                error = self.error_handler.handle(
                    invalid_request(
                        "Signature collection expired before the threshold was reached",
                        fingerprint=fingerprint,
                    ),
                    operation="expire_collection",
                )
                await self._fail(record, error, "signature collection expired")
                failed.append(fingerprint)

        if failed:
            logger.info(f"Failed {len(failed)} transactions with expired signature collections")
        return failed

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def get(self, fingerprint: str) -> Optional[TransactionRecord]:
        return self._records.get(fingerprint)

    def list_records(self, status: Optional[TransactionStatus] = None) -> List[TransactionRecord]:
        records = sorted(self._records.values(), key=lambda r: r.created_at)
        if status is None:
            return records
        return [r for r in records if r.status == status]

    async def purge(self, fingerprint: str) -> bool:
        """Drop a terminal record. Live records cannot be purged."""
        async with self._locks.hold(fingerprint):
            record = self._records.get(fingerprint)
            if record is None:
                return False
            if not record.is_terminal:
                raise self._invalid(f"Cannot purge a {record.status.value} transaction", record, "purge")
            del self._records[fingerprint]
            return True

    def pending_recovery(self) -> List[PendingBroadcast]:
        return self.recovery_store.entries()

    def clear_stale_recovery(self, max_age: Optional[float] = None) -> int:
        age = max_age if max_age is not None else self.settings.pending_recovery_max_age_seconds
        return self.recovery_store.clear_older_than(age)

    def reset(self) -> None:
        self._records.clear()
        self._signing.clear()
        self.recovery_store.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve(self, target: RecordLike) -> TransactionRecord:
        if isinstance(target, TransactionRecord):
            fingerprint = target.fingerprint
        elif isinstance(target, SignedArtifact):
            fingerprint = target.fingerprint
        else:
            fingerprint = target

        record = self._records.get(fingerprint)
        if record is None:
            raise self.error_handler.handle(
                invalid_request("Unknown transaction", fingerprint=fingerprint),
                operation="resolve",
            )
        if isinstance(target, TransactionRecord) and target is not record:
            raise self._invalid("Transaction record was superseded", record, "resolve")
        return record

    async def _active_binding(
        self, operation: str, fingerprint: Optional[str] = None
    ) -> Tuple[ConnectionState, ProviderAdapter]:
        try:
            session: ConnectionState = await self.connection.require_session()
            adapter = self.connection.get_adapter()
        except ClassifiedError as e:
            raise self.error_handler.handle(e, operation=operation, fingerprint=fingerprint)
        return session, adapter

    def _retry_hook(self, record: TransactionRecord) -> RetryHook:
        async def hook(error: ClassifiedError, retry_number: int) -> None:
            record.retry_count += 1
            record.updated_at = self._clock()
            if error.kind != ErrorKind.NONCE_CONFLICT or self._nonce_refresher is None:
                return
            try:
                nonce = await self._nonce_refresher(record)
            except Exception as e:
                logger.warning(f"Nonce refresh for {record.fingerprint[:12]} failed: {e}")
                return
            if nonce is not None:
                record.nonce_override = nonce
                logger.info(f"Refreshed nonce for {record.fingerprint[:12]} to {nonce}")

        return hook

    async def _fail(self, record: TransactionRecord, error: ClassifiedError, reason: str) -> None:
        record.last_error = error
        self._transition(record, TransactionStatus.FAILED, reason)
        await self.coordinator.cancel(record.fingerprint)

    def _invalid(self, detail: str, record: TransactionRecord, operation: str) -> ClassifiedError:
        return self.error_handler.handle(
            invalid_request(detail, fingerprint=record.fingerprint),
            operation=operation,
        )

    def _transition(self, record: TransactionRecord, to_status: TransactionStatus, reason: str) -> None:
        change = transition(record, to_status, self._clock(), reason)
        logger.debug(
            f"Transaction {record.fingerprint[:12]}: {change.from_status.value} -> {to_status.value} ({reason})"
        )
        self._publish(record, change)

    def _publish(self, record: TransactionRecord, change: Optional[StateTransition]) -> None:
        self.events.publish(
            EventType.TRANSACTION_STATE_CHANGED,
            {"fingerprint": record.fingerprint, "status": record.status, "transition": change, "record": record},
        )
