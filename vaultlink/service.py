"""
Wallet service.

Wires the connection state machine, the multi-signature coordinator and the
transaction pipeline together around one event bus and one error handler.
Each WalletService is an isolated instance with an explicit lifecycle:
initialize() restores the session and starts the background sweeps,
shutdown() stops them, reset() clears every table.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import Settings, settings as default_settings
from .logging_config import setup_logging
from .core.artifact import SignedArtifact
from .core.events import EventBus, EventType, Listener, Unsubscribe
from .core.multisig import (
    MultiSigCoordinator,
    MultiSigPolicy,
    MultiSigStatus,
    PolicyBook,
)
from .core.providers import ProviderFactory, ProviderRegistry, RemoteSignerProvider
from .core.recovery import ErrorAuditLog, ErrorHandler, ErrorRecord, InvalidRequestError
from .core.recovery.executor import SleepFunc
from .core.transactions import (
    BatchResult,
    BatchSigner,
    BroadcastEndpoint,
    BroadcastReceipt,
    HttpBroadcastEndpoint,
    NonceRefresher,
    SignResult,
    TransactionPipeline,
    TransactionRecord,
)
from .core.transactions.batch import ProgressCallback
from .core.transactions.pipeline import RecordLike
from .core.transactions.validation import IntentLike
from .core.wallet import ConnectionState, ConnectionStateMachine, SessionStore, create_session_store


logger = logging.getLogger(__name__)


class _UnconfiguredBroadcastEndpoint(BroadcastEndpoint):
    async def submit(self, artifact: SignedArtifact) -> BroadcastReceipt:
        raise InvalidRequestError("No ledger broadcast endpoint is configured")


class WalletService:
    """
    Facade over the signing core.

    Usage:
        service = WalletService(settings=Settings())
        service.register_provider("local", LocalKeyProvider)
        async with service:
            await service.connect("local")
            record = await service.prepare_transaction({...})
            await service.sign_transaction(record)
            await service.broadcast_transaction(record)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        registry: Optional[ProviderRegistry] = None,
        store: Optional[SessionStore] = None,
        broadcaster: Optional[BroadcastEndpoint] = None,
        clock: Callable[[], float] = time.time,
        sleep: SleepFunc = asyncio.sleep,
        nonce_refresher: Optional[NonceRefresher] = None,
    ):
        self.settings = settings or default_settings
        self.events = EventBus()
        self.audit_log = ErrorAuditLog(max_entries=self.settings.error_log_max_entries)
        self.error_handler = ErrorHandler(self.audit_log, self.events)
        self.registry = registry if registry is not None else ProviderRegistry(clock=clock)
        self.policies = PolicyBook()

        if self.settings.has_remote_signer and not self.registry.is_registered("remote"):
            self.registry.register(
                "remote",
                lambda: RemoteSignerProvider(
                    self.settings.remote_signer_url,
                    timeout=self.settings.http_timeout_seconds,
                ),
            )

        self.connection = ConnectionStateMachine(
            self.registry,
            store=store or create_session_store(self.settings.session_store_path),
            error_handler=self.error_handler,
            events=self.events,
            settings=self.settings,
            clock=clock,
            sleep=sleep,
        )
        self.coordinator = MultiSigCoordinator(events=self.events, settings=self.settings, clock=clock)
        self.broadcaster = broadcaster if broadcaster is not None else self._default_broadcaster()
        self.pipeline = TransactionPipeline(
            self.connection,
            self.coordinator,
            self.broadcaster,
            policies=self.policies,
            error_handler=self.error_handler,
            events=self.events,
            settings=self.settings,
            clock=clock,
            sleep=sleep,
            nonce_refresher=nonce_refresher,
        )
        self.batch = BatchSigner(self.pipeline)

        self._maintenance: Optional[asyncio.Task] = None
        self._initialized = False

    def _default_broadcaster(self) -> BroadcastEndpoint:
        if self.settings.has_broadcast_url:
            return HttpBroadcastEndpoint(
                self.settings.broadcast_url,
                timeout=self.settings.http_timeout_seconds,
            )
        logger.warning("No broadcast URL configured; broadcasts will be rejected")
        return _UnconfiguredBroadcastEndpoint()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self, start_background: bool = True) -> ConnectionState:
        """Restore the persisted session and start the periodic sweeps."""
        state = await self.connection.restore()
        if start_background:
            self.connection.start_sweeper()
            if self._maintenance is None or self._maintenance.done():
                self._maintenance = asyncio.create_task(self._maintenance_loop())
        self._initialized = True
        logger.info(f"Wallet service initialized (connection: {state.status.value})")
        return state

    async def shutdown(self) -> None:
        await self.connection.close()
        if self._maintenance is not None:
            self._maintenance.cancel()
            try:
                await self._maintenance
            except asyncio.CancelledError:
                pass
            self._maintenance = None

        for provider_id in self.registry.loaded():
            adapter = await self.registry.get_adapter(provider_id)
            close = getattr(adapter, "close", None)
            if close is not None:
                await close()
        close = getattr(self.broadcaster, "close", None)
        if close is not None:
            await close()

        self._initialized = False
        logger.info("Wallet service shut down")

    async def reset(self) -> None:
        """Clear session, cache, collections, records and error history."""
        await self.connection.reset()
        self.coordinator.reset()
        self.pipeline.reset()
        self.audit_log.clear()
        if self._initialized and self._maintenance is not None:
            self.connection.start_sweeper()

    async def __aenter__(self) -> "WalletService":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def _maintenance_loop(self) -> None:
        interval = self.settings.session_sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.pipeline.expire_collections()
                self.pipeline.clear_stale_recovery()
            except Exception as e:
                logger.error(f"Maintenance sweep failed: {e}")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_provider(self, provider_id: str, factory: ProviderFactory, replace: bool = False) -> None:
        self.registry.register(provider_id, factory, replace=replace)

    def register_policy(self, account: str, policy: MultiSigPolicy) -> None:
        self.policies.register(account, policy)
        logger.info(f"Registered {policy.threshold}-of-{policy.total_signers} policy for {account}")

    def subscribe(self, listener: Listener, event_type: Optional[EventType] = None) -> Unsubscribe:
        return self.events.subscribe(listener, event_type)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(
        self,
        provider_id: str,
        timeout: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ConnectionState:
        return await self.connection.connect(provider_id, timeout=timeout, metadata=metadata)

    async def disconnect(self) -> ConnectionState:
        return await self.connection.disconnect()

    async def reconnect(self, provider_id: Optional[str] = None) -> ConnectionState:
        return await self.connection.reconnect(provider_id)

    def get_connection_state(self) -> ConnectionState:
        return self.connection.get_state()

    def provider_circuits(self) -> Dict[str, Any]:
        return self.connection.breaker.to_dict()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def prepare_transaction(self, intent: IntentLike) -> TransactionRecord:
        return await self.pipeline.prepare(intent)

    async def sign_transaction(self, target: RecordLike) -> SignResult:
        return await self.pipeline.sign(target)

    async def submit_cosigner_signature(
        self,
        target: RecordLike,
        signer: str,
        signature: str,
        public_key: Optional[str] = None,
    ) -> SignResult:
        return await self.pipeline.add_signature(target, signer, signature, public_key)

    async def broadcast_transaction(self, target: RecordLike) -> BroadcastReceipt:
        return await self.pipeline.broadcast(target)

    async def cancel_transaction(self, target: RecordLike) -> TransactionRecord:
        return await self.pipeline.cancel(target)

    async def sign_batch(
        self,
        intents: Sequence[IntentLike],
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        return await self.batch.sign_batch(intents, on_progress=on_progress)

    async def sign_message(self, text: str) -> str:
        return await self.pipeline.sign_message(text)

    def get_transaction(self, fingerprint: str) -> Optional[TransactionRecord]:
        return self.pipeline.get(fingerprint)

    # ------------------------------------------------------------------
    # Multi-signature
    # ------------------------------------------------------------------

    def get_multisig_status(self, fingerprint: str) -> Optional[MultiSigStatus]:
        return self.coordinator.get_status(fingerprint)

    def list_pending_multisig_transactions(self) -> List[str]:
        return self.coordinator.list_pending()

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    def error_statistics(self) -> Dict[str, Any]:
        return self.audit_log.get_statistics()

    def recent_errors(self, limit: int = 10) -> List[ErrorRecord]:
        return self.audit_log.recent(limit)


def create_wallet_service(
    settings: Optional[Settings] = None,
    providers: Optional[Dict[str, ProviderFactory]] = None,
    configure_logging: bool = True,
    **kwargs: Any,
) -> WalletService:
    """Configure logging, build a service and register the given provider factories."""
    if configure_logging:
        setup_logging(settings=settings)
    service = WalletService(settings=settings, **kwargs)
    for provider_id, factory in (providers or {}).items():
        service.register_provider(provider_id, factory)
    return service
