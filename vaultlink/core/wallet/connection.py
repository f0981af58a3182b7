"""
Connection State Machine

Owns the single wallet connection:

    disconnected -> connecting -> connected
                          \\-> error
    any -> unknown        (ambiguous restore)
    connected -> disconnected   (explicit disconnect or expiry sweep)

The lock guards session mutations only; it is never held while a provider
is being awaited. Each connect attempt takes a token, and a handshake that
completes after its token was replaced is discarded. Concurrent connects to
the same provider share one attempt.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set

from ...cache import TTLCache
from ...config import Settings, settings as default_settings
from ..events import EventBus, EventType
from ..providers.base import ProviderAccount, ProviderAdapter
from ..providers.registry import ProviderRegistry
from ..recovery.breaker import CircuitBreakerConfig, ProviderCircuitBreaker
from ..recovery.errors import (
    ClassifiedError,
    ErrorKind,
    ProviderUnavailableError,
    WalletNotInstalledError,
    invalid_request,
)
from ..recovery.executor import RecoveryExecutor, SleepFunc
from ..recovery.handler import ErrorHandler
from .models import ConnectionMetrics, ConnectionSession, ConnectionState, ConnectionStatus
from .session_store import InMemorySessionStore, SessionStore


logger = logging.getLogger(__name__)


@dataclass
class _Attempt:
    """One handshake, shared by every caller connecting to the same provider."""
    token: int
    provider_id: str
    done: asyncio.Event = field(default_factory=asyncio.Event)
    result: Optional[ConnectionState] = None
    error: Optional[ClassifiedError] = None


class ConnectionStateMachine:
    def __init__(
        self,
        registry: ProviderRegistry,
        store: Optional[SessionStore] = None,
        error_handler: Optional[ErrorHandler] = None,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
        cache: Optional[TTLCache] = None,
        breaker: Optional[ProviderCircuitBreaker] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.registry = registry
        self.store = store if store is not None else InMemorySessionStore()
        self.error_handler = error_handler if error_handler is not None else ErrorHandler()
        self.events = events if events is not None else EventBus()
        self.settings = settings or default_settings
        self._clock = clock
        self._cache = cache if cache is not None else TTLCache(
            default_ttl=self.settings.connection_cache_ttl_seconds,
            clock=clock,
        )
        self.breaker = breaker if breaker is not None else ProviderCircuitBreaker(
            CircuitBreakerConfig(
                failure_threshold=self.settings.provider_failure_threshold,
                reset_timeout_seconds=self.settings.provider_reset_seconds,
            ),
            clock=clock,
        )
        self._recovery = RecoveryExecutor(self.error_handler, sleep=sleep, logger=logger)

        self._session = ConnectionSession()
        self._adapter: Optional[ProviderAdapter] = None
        self._lock = asyncio.Lock()
        self._attempt = 0
        self._current: Optional[_Attempt] = None
        self._metrics = ConnectionMetrics()
        self._late_handshakes: Set[asyncio.Future] = set()
        self._sweeper: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_state(self) -> ConnectionState:
        return self._session.snapshot()

    def get_metrics(self) -> Dict[str, Any]:
        metrics = self._metrics.to_dict()
        metrics["circuits"] = self.breaker.to_dict()
        return metrics

    def connection_duration(self) -> Optional[float]:
        """Seconds since the current session connected, None when not connected."""
        if not self._session.is_connected or self._session.connected_at is None:
            return None
        return max(0.0, self._clock() - self._session.connected_at)

    async def require_session(self) -> ConnectionState:
        """Return the active session or raise invalid_request."""
        if self._session.is_connected and self._session.is_expired(self._clock()):
            await self.sweep_expired()
        if not self._session.is_connected:
            raise invalid_request("No active wallet connection")
        return self._session.snapshot()

    def get_adapter(self) -> ProviderAdapter:
        if not self._session.is_connected or self._adapter is None:
            raise invalid_request("No active wallet connection")
        return self._adapter

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    async def connect(
        self,
        provider_id: str,
        timeout: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ConnectionState:
        """
        Connect to a provider.

        A non-expired cached result for the same provider short-circuits the
        handshake, and a call made while a handshake with the same provider
        is in flight waits for that handshake. Connecting to another provider
        first tears down the current binding.

        Raises:
            ClassifiedError: handshake failed, was cancelled, or timed out,
                or the provider's circuit is open
        """
        now = self._clock()
        self._metrics.attempts += 1
        self._metrics.last_attempt_at = now

        cached = await self._cache.get(provider_id)
        if cached is not None:
            if (
                self._session.is_connected
                and self._session.provider_id == provider_id
                and not self._session.is_expired(now)
            ):
                self._metrics.cache_hits += 1
                logger.debug(f"Using cached connection for {provider_id}")
                return self._session.snapshot()
            await self._cache.delete(provider_id)

        joined = self._joinable(provider_id)
        if joined is not None:
            return await self._join(joined)

        try:
            self.breaker.check(provider_id)
        except ProviderUnavailableError as e:
            error = self.error_handler.handle(e, provider_id=provider_id, operation="connect")
            error.details.setdefault("retryAfter", e.retry_after)
            raise error

        if self._session.is_connected and self._session.provider_id != provider_id:
            logger.info(
                f"Switching provider from {self._session.provider_id} to {provider_id}"
            )
            await self.disconnect()

        async with self._lock:
            joined = self._joinable(provider_id)
            if joined is None:
                self._attempt += 1
                attempt = _Attempt(token=self._attempt, provider_id=provider_id)
                self._current = attempt
                self._session = ConnectionSession(
                    status=ConnectionStatus.CONNECTING,
                    provider_id=provider_id,
                    metadata=dict(self._session.metadata) if self._session.provider_id == provider_id else {},
                )
                self._adapter = None

        if joined is not None:
            return await self._join(joined)

        self._publish_state()
        try:
            return await self._run_attempt(attempt, timeout, metadata)
        except asyncio.CancelledError:
            if attempt.result is None and attempt.error is None:
                attempt.error = self.error_handler.handle(
                    ClassifiedError(ErrorKind.USER_REJECTED, detail="Connection attempt was cancelled"),
                    provider_id=provider_id,
                    operation="connect",
                )
                await self._fail_attempt(attempt.token, attempt.error)
            raise
        finally:
            attempt.done.set()
            if self._current is attempt:
                self._current = None

    def _joinable(self, provider_id: str) -> Optional[_Attempt]:
        current = self._current
        if (
            current is not None
            and current.provider_id == provider_id
            and current.token == self._attempt
            and not current.done.is_set()
        ):
            return current
        return None

    async def _join(self, attempt: _Attempt) -> ConnectionState:
        logger.debug(f"Joining in-flight connection attempt for {attempt.provider_id}")
        await attempt.done.wait()
        if attempt.error is not None:
            raise attempt.error
        return attempt.result

    async def _run_attempt(
        self,
        attempt: _Attempt,
        timeout: Optional[float],
        metadata: Optional[Dict[str, Any]],
    ) -> ConnectionState:
        provider_id = attempt.provider_id
        deadline = timeout if timeout is not None else self.settings.connect_timeout_seconds
        handshake_metadata = {**self.settings.app_metadata(), **(metadata or {})}
        adapter: Optional[ProviderAdapter] = None

        try:
            adapter = await self.registry.get_adapter(provider_id)
            account = await self._race_handshake(adapter, handshake_metadata, deadline, provider_id)
        except Exception as e:
            error = self.error_handler.handle(e, provider_id=provider_id, operation="connect")
            if error.kind == ErrorKind.WALLET_NOT_INSTALLED and adapter is not None and adapter.install_url:
                error.details.setdefault("installUrl", adapter.install_url)
            if error.recoverable:
                self.breaker.record_failure(provider_id)
            attempt.error = error
            await self._fail_attempt(attempt.token, error)
            raise error

        async with self._lock:
            if attempt.token != self._attempt:
                current = self._session
                if current.provider_id is not None and current.provider_id != provider_id:
                    stale = invalid_request(
                        f"Connection attempt was superseded by a connection to {current.provider_id}"
                    )
                else:
                    stale = ClassifiedError(ErrorKind.USER_REJECTED, detail="Connection attempt was cancelled")
                logger.warning(f"Discarding handshake result from {provider_id}: attempt superseded")
            else:
                stale = None
                connected_at = self._clock()
                self._session = ConnectionSession(
                    status=ConnectionStatus.CONNECTED,
                    provider_id=provider_id,
                    address=account.address,
                    public_key=account.public_key,
                    chain_id=account.chain_id,
                    connected_at=connected_at,
                    expires_at=connected_at + self.settings.session_expiry_seconds,
                    metadata=self._session.metadata,
                )
                self._adapter = adapter
                self._metrics.last_success_at = connected_at
                snapshot = self._session.snapshot()
                record = self._session.to_dict()

        if stale is not None:
            attempt.error = self.error_handler.handle(stale, provider_id=provider_id, operation="connect")
            raise attempt.error

        self.breaker.record_success(provider_id)
        attempt.result = snapshot
        await self._cache.set(provider_id, snapshot)
        await self._persist(record)
        logger.info(f"Connected to {provider_id} as {account.address}")
        self._publish_state()
        self._publish_session()
        return snapshot

    async def _race_handshake(
        self,
        adapter: ProviderAdapter,
        metadata: Dict[str, Any],
        deadline: float,
        provider_id: str,
    ) -> ProviderAccount:
        async def handshake() -> ProviderAccount:
            if not await adapter.is_installed():
                raise WalletNotInstalledError(f"Provider {provider_id} is not installed")
            return await adapter.connect(metadata)

        task = asyncio.ensure_future(handshake())
        try:
            done, _ = await asyncio.wait({task}, timeout=deadline)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task not in done:
            # Leave the handshake running; whatever it produces is dropped
            self._late_handshakes.add(task)
            task.add_done_callback(self._late_handshake_callback(provider_id))
            raise asyncio.TimeoutError(f"Handshake with {provider_id} timed out after {deadline}s")
        return task.result()

    def _late_handshake_callback(self, provider_id: str) -> Callable[[asyncio.Future], None]:
        def callback(task: asyncio.Future) -> None:
            self._late_handshakes.discard(task)
            if task.cancelled():
                return
            error = task.exception()
            if error is not None:
                logger.info(f"Late handshake with {provider_id} failed after timeout: {error}")
            else:
                logger.warning(f"Discarding late handshake result from {provider_id}")

        return callback

    async def _fail_attempt(self, token: int, error: ClassifiedError) -> None:
        async with self._lock:
            if token != self._attempt:
                return
            self._metrics.failures += 1
            self._session.status = ConnectionStatus.ERROR
            self._session.address = None
            self._session.public_key = None
            self._session.last_error = error
        # A session this attempt replaced must not be restored later
        await self._forget()
        self._publish_state()

    async def reconnect(self, provider_id: Optional[str] = None) -> ConnectionState:
        """
        Re-establish the connection after a failed handshake or an ambiguous
        restore.

        Defaults to the provider of the current errored or unknown session.
        Attempts are retried per the recovery table for each failure kind and
        stop as soon as the provider's circuit opens.

        Raises:
            ClassifiedError: invalid_request when there is nothing to reconnect
                to, otherwise the last connect failure
        """
        target = provider_id or self._session.provider_id
        if target is None:
            raise self.error_handler.handle(
                invalid_request("No provider to reconnect to"),
                operation="reconnect",
            )

        if (
            self._session.is_connected
            and self._session.provider_id == target
            and not self._session.is_expired(self._clock())
        ):
            return self._session.snapshot()

        self._metrics.reconnects += 1
        await self._cache.delete(target)
        logger.info(f"Reconnecting to {target}")

        result = await self._recovery.execute(
            lambda: self.connect(target),
            operation_name="reconnect",
            provider_id=target,
            can_retry=lambda error: self.breaker.allows(target),
        )
        if not result.success:
            logger.warning(f"Reconnect to {target} gave up after {result.attempts} attempts")
            raise result.error

        logger.info(f"Reconnected to {target} after {result.attempts} attempt(s)")
        return result.result

    async def disconnect(self) -> ConnectionState:
        """
        Drop the session locally, then tear down the remote binding.

        Always succeeds locally; calling it when already disconnected is a
        no-op.
        """
        async with self._lock:
            previous = self._session
            adapter = self._adapter
            self._attempt += 1
            self._session = ConnectionSession()
            self._adapter = None

        await self._cache.clear()
        await self._forget()

        if previous.status == ConnectionStatus.DISCONNECTED:
            return self._session.snapshot()

        if adapter is not None and previous.is_connected:
            await self._teardown(adapter, previous.provider_id)

        logger.info(f"Disconnected from {previous.provider_id}")
        self._publish_state()
        self._publish_session()
        return self._session.snapshot()

    async def _teardown(self, adapter: ProviderAdapter, provider_id: Optional[str]) -> None:
        try:
            await adapter.disconnect()
        except Exception as e:
            logger.warning(f"Remote teardown of {provider_id} failed: {e}")

    # ------------------------------------------------------------------
    # Session maintenance
    # ------------------------------------------------------------------

    async def update_metadata(self, metadata: Dict[str, Any]) -> ConnectionState:
        async with self._lock:
            if not self._session.is_connected:
                raise invalid_request("No active wallet connection")
            self._session.metadata.update(metadata)
            snapshot = self._session.snapshot()
            record = self._session.to_dict()

        await self._persist(record)
        self._publish_session()
        return snapshot

    async def restore(self) -> ConnectionState:
        """
        Reload the persisted session on startup.

        valid -> connected, expired -> cleared and disconnected,
        unreadable or unverifiable -> unknown.
        """
        try:
            record = await self.store.load()
        except Exception as e:
            logger.warning(f"Could not read persisted session: {e}")
            return await self._mark_unknown(ConnectionSession())

        if record is None:
            return self._session.snapshot()

        try:
            session = ConnectionSession.from_dict(record)
        except (ValueError, TypeError, KeyError) as e:
            logger.warning(f"Persisted session is malformed: {e}")
            return await self._mark_unknown(ConnectionSession())

        if session.status != ConnectionStatus.CONNECTED or not session.address:
            await self._forget()
            return self._session.snapshot()

        if session.expires_at is None:
            logger.warning("Persisted session has no expiry; state is unknown")
            return await self._mark_unknown(session)

        if session.is_expired(self._clock()):
            logger.info(f"Persisted session for {session.provider_id} has expired")
            await self._forget()
            return self._session.snapshot()

        try:
            adapter = await self.registry.get_adapter(session.provider_id)
        except Exception as e:
            logger.warning(f"Cannot bind restored session to {session.provider_id}: {e}")
            return await self._mark_unknown(session)

        async with self._lock:
            self._attempt += 1
            self._session = session
            self._adapter = adapter
            snapshot = session.snapshot()

        logger.info(f"Restored session for {session.provider_id} ({session.address})")
        self._publish_state()
        self._publish_session()
        return snapshot

    async def _mark_unknown(self, session: ConnectionSession) -> ConnectionState:
        async with self._lock:
            self._attempt += 1
            session.status = ConnectionStatus.UNKNOWN
            session.address = None
            session.public_key = None
            self._session = session
            self._adapter = None
            snapshot = session.snapshot()
        self._publish_state()
        return snapshot

    async def sweep_expired(self) -> bool:
        """Disconnect an expired session. Returns True when one was cleared."""
        await self._cache.purge_expired()

        async with self._lock:
            if not (self._session.is_connected and self._session.is_expired(self._clock())):
                return False
            previous = self._session
            adapter = self._adapter
            self._attempt += 1
            self._session = ConnectionSession()
            self._adapter = None

        logger.info(f"Session for {previous.provider_id} expired")
        await self._cache.clear()
        await self._forget()
        if adapter is not None:
            await self._teardown(adapter, previous.provider_id)
        self._publish_state()
        self._publish_session()
        return True

    def start_sweeper(self, interval: Optional[float] = None) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        period = interval if interval is not None else self.settings.session_sweep_interval_seconds
        self._sweeper = asyncio.create_task(self._sweep_loop(period))

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_expired()
            except Exception as e:
                logger.error(f"Session sweep failed: {e}")

    async def reset(self) -> None:
        """Clear everything without remote teardown."""
        await self.close()
        async with self._lock:
            self._attempt += 1
            self._session = ConnectionSession()
            self._adapter = None
            self._current = None
            self._metrics = ConnectionMetrics()
        self.breaker.reset()
        await self._cache.clear()
        await self._forget()

    async def close(self) -> None:
        """Stop background work: the sweeper and any handshake left running after a timeout."""
        await self.stop_sweeper()
        for task in list(self._late_handshakes):
            task.cancel()
        self._late_handshakes.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _persist(self, record: Dict[str, Any]) -> None:
        try:
            await self.store.save(record)
        except Exception as e:
            logger.error(f"Failed to persist session: {e}")

    async def _forget(self) -> None:
        try:
            await self.store.clear()
        except Exception as e:
            logger.error(f"Failed to clear persisted session: {e}")

    def _publish_state(self) -> None:
        self.events.publish(EventType.CONNECTION_STATE_CHANGED, self._session.snapshot())

    def _publish_session(self) -> None:
        self.events.publish(EventType.SESSION_CHANGED, self._session.snapshot())
