"""
Tests for the connection state machine and session persistence.
"""

import asyncio
import json

import pytest

from vaultlink.core.events import EventBus, EventType
from vaultlink.core.providers import ProviderRegistry
from vaultlink.core.recovery import (
    CircuitState,
    ClassifiedError,
    ErrorKind,
    UserRejectedError,
)
from vaultlink.core.wallet import (
    ConnectionSession,
    ConnectionStateMachine,
    ConnectionStatus,
    InMemorySessionStore,
    JsonFileSessionStore,
    SessionStore,
    SessionStoreError,
    create_session_store,
)

from conftest import ScriptedProvider


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def machine(registry, store, events, settings, clock, sleeper):
    return ConnectionStateMachine(
        registry,
        store=store,
        events=events,
        settings=settings,
        clock=clock,
        sleep=sleeper,
    )


def persisted(clock, **overrides):
    record = {
        "status": "connected",
        "providerId": "scripted",
        "address": "SIGNER_X",
        "publicKey": "pk-SIGNER_X",
        "chainId": "stacks:1",
        "connectedAt": int(clock() * 1000),
        "expiresAt": int((clock() + 3600) * 1000),
        "metadata": {},
    }
    record.update(overrides)
    return record


class BrokenStore(SessionStore):
    async def save(self, record):
        raise SessionStoreError("disk full")

    async def load(self):
        raise SessionStoreError("corrupt")

    async def clear(self):
        raise SessionStoreError("read-only")


# =============================================================================
# Connect Tests
# =============================================================================

class TestConnect:
    """Tests for connect()."""

    @pytest.mark.asyncio
    async def test_connect_success(self, machine, provider, store, clock, settings):
        """Test a clean handshake produces a connected session."""
        state = await machine.connect("scripted")

        assert state.status == ConnectionStatus.CONNECTED
        assert state.address == "SIGNER_X"
        assert state.public_key == "pk-SIGNER_X"
        assert state.provider_id == "scripted"
        assert state.expires_at == clock() + settings.session_expiry_seconds
        assert provider.connect_calls == 1

        record = await store.load()
        assert record["status"] == "connected"
        assert record["address"] == "SIGNER_X"

    @pytest.mark.asyncio
    async def test_publishes_transitions(self, machine, events):
        """Test that connecting and connected are both published."""
        seen = []
        events.subscribe(lambda e: seen.append(e.payload.status), EventType.CONNECTION_STATE_CHANGED)

        await machine.connect("scripted")

        assert seen == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]

    @pytest.mark.asyncio
    async def test_cache_hit_within_ttl(self, machine, provider, clock):
        """Test that a reconnect within the cache TTL skips the handshake."""
        first = await machine.connect("scripted")
        clock.advance(299)
        second = await machine.connect("scripted")

        assert provider.connect_calls == 1
        assert second == first
        assert machine.get_metrics()["cacheHits"] == 1

    @pytest.mark.asyncio
    async def test_cache_miss_after_ttl(self, machine, provider, clock):
        """Test that an expired cache entry triggers a fresh handshake."""
        await machine.connect("scripted")
        clock.advance(301)
        state = await machine.connect("scripted")

        assert provider.connect_calls == 2
        assert state.status == ConnectionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_user_rejection(self, machine, provider):
        """Test that a declined handshake leaves the machine in error."""
        provider.connect_errors.append(UserRejectedError("User rejected the request"))

        with pytest.raises(ClassifiedError) as exc_info:
            await machine.connect("scripted")

        assert exc_info.value.kind == ErrorKind.USER_REJECTED
        state = machine.get_state()
        assert state.status == ConnectionStatus.ERROR
        assert state.address is None
        assert state.last_error.kind == ErrorKind.USER_REJECTED
        assert machine.get_metrics()["failures"] == 1

    @pytest.mark.asyncio
    async def test_handshake_not_retried(self, machine, provider):
        """Test that a network failure during connect surfaces without retries."""
        provider.connect_errors.append(ConnectionError("Connection refused"))

        with pytest.raises(ClassifiedError) as exc_info:
            await machine.connect("scripted")

        assert exc_info.value.kind == ErrorKind.NETWORK_ERROR
        assert provider.connect_calls == 1

    @pytest.mark.asyncio
    async def test_not_installed(self, machine, provider):
        """Test that a missing wallet surfaces its install link."""
        provider.installed = False

        with pytest.raises(ClassifiedError) as exc_info:
            await machine.connect("scripted")

        assert exc_info.value.kind == ErrorKind.WALLET_NOT_INSTALLED
        assert exc_info.value.details["installUrl"] == provider.install_url
        assert provider.connect_calls == 0

    @pytest.mark.asyncio
    async def test_unknown_provider(self, machine):
        """Test that an unregistered provider is an invalid request."""
        with pytest.raises(ClassifiedError) as exc_info:
            await machine.connect("ghost")

        assert exc_info.value.kind == ErrorKind.INVALID_REQUEST
        assert machine.get_state().status == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_timeout_discards_late_result(self, machine, provider):
        """Test that a handshake finishing after the deadline never connects."""
        provider.connect_gate = asyncio.Event()

        with pytest.raises(ClassifiedError) as exc_info:
            await machine.connect("scripted", timeout=0.01)

        assert exc_info.value.kind == ErrorKind.TIMEOUT
        assert machine.get_state().status == ConnectionStatus.ERROR

        # Let the handshake finish late
        provider.connect_gate.set()
        for _ in range(5):
            await asyncio.sleep(0)

        state = machine.get_state()
        assert state.status == ConnectionStatus.ERROR
        assert state.address is None
        await machine.close()

    @pytest.mark.asyncio
    async def test_new_attempt_supersedes_pending(self, machine, provider):
        """Test that a disconnect during a handshake cancels that attempt."""
        provider.connect_gate = asyncio.Event()
        pending = asyncio.create_task(machine.connect("scripted"))
        await asyncio.sleep(0)
        assert machine.get_state().status == ConnectionStatus.CONNECTING

        await machine.disconnect()
        provider.connect_gate.set()

        with pytest.raises(ClassifiedError) as exc_info:
            await pending
        assert exc_info.value.kind == ErrorKind.USER_REJECTED
        assert machine.get_state().status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_switching_provider_tears_down_previous(self, machine, registry, provider):
        """Test that connecting another provider disconnects the first."""
        other = ScriptedProvider(provider_id="other", address="SIGNER_Y")
        registry.register_adapter(other)

        await machine.connect("scripted")
        state = await machine.connect("other")

        assert state.provider_id == "other"
        assert state.address == "SIGNER_Y"
        assert provider.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_metadata_merged_into_handshake(self, machine, provider, settings):
        """Test that application metadata is sent with caller metadata."""
        await machine.connect("scripted", metadata={"origin": "cli"})

        assert provider.last_metadata["name"] == settings.app_name
        assert provider.last_metadata["origin"] == "cli"

    @pytest.mark.asyncio
    async def test_cancelled_connect_moves_to_error(self, machine, provider):
        """Test that cancelling a connect call fails the attempt and stops its handshake."""
        provider.connect_gate = asyncio.Event()
        pending = asyncio.create_task(machine.connect("scripted"))
        for _ in range(3):
            await asyncio.sleep(0)
        assert machine.get_state().status == ConnectionStatus.CONNECTING
        assert provider.connect_calls == 1

        pending.cancel()
        with pytest.raises(asyncio.CancelledError):
            await pending

        state = machine.get_state()
        assert state.status == ConnectionStatus.ERROR
        assert state.last_error.kind == ErrorKind.USER_REJECTED
        assert machine.get_metrics()["failures"] == 1
        assert machine._late_handshakes == set()

        # The handshake was cancelled with its caller, so releasing it changes nothing
        provider.connect_gate.set()
        for _ in range(3):
            await asyncio.sleep(0)
        assert machine.get_state().status == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_concurrent_connects_share_one_handshake(self, machine, provider):
        """Test that overlapping connects to one provider join the same attempt."""
        provider.connect_gate = asyncio.Event()
        first = asyncio.create_task(machine.connect("scripted"))
        await asyncio.sleep(0)
        second = asyncio.create_task(machine.connect("scripted"))
        await asyncio.sleep(0)

        provider.connect_gate.set()
        results = await asyncio.gather(first, second)

        assert [r.status for r in results] == [ConnectionStatus.CONNECTED] * 2
        assert results[0].address == results[1].address == "SIGNER_X"
        assert provider.connect_calls == 1
        assert machine.error_handler.audit_log.get_statistics()["totalErrors"] == 0

    @pytest.mark.asyncio
    async def test_connect_to_other_provider_supersedes_pending(self, machine, registry, provider):
        """Test that a handshake overtaken by another provider is not reported as a rejection."""
        other = ScriptedProvider(provider_id="other", address="SIGNER_Y")
        registry.register_adapter(other)
        provider.connect_gate = asyncio.Event()
        pending = asyncio.create_task(machine.connect("scripted"))
        await asyncio.sleep(0)

        state = await machine.connect("other")
        provider.connect_gate.set()
        with pytest.raises(ClassifiedError) as exc_info:
            await pending

        assert exc_info.value.kind == ErrorKind.INVALID_REQUEST
        assert state.provider_id == "other"
        assert machine.get_state().status == ConnectionStatus.CONNECTED
        assert machine.get_state().address == "SIGNER_Y"
        assert machine.error_handler.audit_log.get_statistics()["byKind"] == {"invalid_request": 1}

    @pytest.mark.asyncio
    async def test_failed_rehandshake_clears_persisted_session(self, machine, provider, store, registry, settings, clock):
        """Test that a session replaced by a failed handshake is not restored later."""
        await machine.connect("scripted")
        clock.advance(301)
        provider.connect_errors.append(ConnectionError("connection refused"))

        with pytest.raises(ClassifiedError):
            await machine.connect("scripted")

        assert machine.get_state().status == ConnectionStatus.ERROR
        assert await store.load() is None

        restarted = ConnectionStateMachine(registry, store=store, settings=settings, clock=clock)
        state = await restarted.restore()
        assert state.status == ConnectionStatus.DISCONNECTED
        assert state.address is None


# =============================================================================
# Disconnect Tests
# =============================================================================

class TestDisconnect:
    """Tests for disconnect()."""

    @pytest.mark.asyncio
    async def test_disconnect_clears_everything(self, machine, provider, store):
        """Test that disconnect clears session, cache, and storage."""
        await machine.connect("scripted")
        state = await machine.disconnect()

        assert state.status == ConnectionStatus.DISCONNECTED
        assert state.address is None
        assert await store.load() is None
        assert provider.disconnect_calls == 1

        # Cache was cleared, so reconnecting performs a handshake
        await machine.connect("scripted")
        assert provider.connect_calls == 2

    @pytest.mark.asyncio
    async def test_disconnect_idempotent(self, machine, events):
        """Test that a second disconnect is a no-op."""
        await machine.connect("scripted")
        await machine.disconnect()

        seen = []
        events.subscribe(lambda e: seen.append(e))
        state = await machine.disconnect()

        assert state.status == ConnectionStatus.DISCONNECTED
        assert seen == []

    @pytest.mark.asyncio
    async def test_teardown_failure_is_logged(self, machine, provider):
        """Test that a failing remote teardown still disconnects locally."""
        await machine.connect("scripted")
        provider.disconnect_error = ConnectionError("socket closed")

        state = await machine.disconnect()

        assert state.status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_require_session(self, machine):
        """Test require_session without a connection."""
        with pytest.raises(ClassifiedError) as exc_info:
            await machine.require_session()
        assert exc_info.value.kind == ErrorKind.INVALID_REQUEST


# =============================================================================
# Expiry Tests
# =============================================================================

class TestExpiry:
    """Tests for session expiry."""

    @pytest.mark.asyncio
    async def test_sweep_expired(self, machine, clock, settings, store):
        """Test that the sweep clears an expired session."""
        await machine.connect("scripted")
        assert await machine.sweep_expired() is False

        clock.advance(settings.session_expiry_seconds)
        assert await machine.sweep_expired() is True

        assert machine.get_state().status == ConnectionStatus.DISCONNECTED
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_require_session_expires_lazily(self, machine, clock, settings):
        """Test that an expired session is never handed out."""
        await machine.connect("scripted")
        clock.advance(settings.session_expiry_seconds + 1)

        with pytest.raises(ClassifiedError):
            await machine.require_session()
        assert machine.get_state().status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connection_duration(self, machine, clock):
        """Test connection duration tracking."""
        assert machine.connection_duration() is None
        await machine.connect("scripted")
        clock.advance(42)
        assert machine.connection_duration() == 42

    @pytest.mark.asyncio
    async def test_update_metadata(self, machine, store):
        """Test metadata updates are persisted."""
        await machine.connect("scripted")
        state = await machine.update_metadata({"label": "treasury"})

        assert state.metadata["label"] == "treasury"
        assert (await store.load())["metadata"]["label"] == "treasury"

    @pytest.mark.asyncio
    async def test_sweeper_lifecycle(self, machine):
        """Test starting and stopping the background sweep."""
        machine.start_sweeper(interval=60)
        assert machine._sweeper is not None
        await machine.stop_sweeper()
        assert machine._sweeper is None


# =============================================================================
# Restore Tests
# =============================================================================

class TestRestore:
    """Tests for restore()."""

    @pytest.mark.asyncio
    async def test_restore_valid(self, registry, settings, clock):
        """Test that a valid persisted session comes back connected."""
        store = InMemorySessionStore(persisted(clock))
        machine = ConnectionStateMachine(registry, store=store, settings=settings, clock=clock)

        state = await machine.restore()

        assert state.status == ConnectionStatus.CONNECTED
        assert state.address == "SIGNER_X"
        assert state.expires_at == pytest.approx(clock() + 3600)

    @pytest.mark.asyncio
    async def test_restore_expired(self, registry, settings, clock):
        """Test that an expired session is cleared."""
        store = InMemorySessionStore(persisted(clock, expiresAt=int((clock() - 1) * 1000)))
        machine = ConnectionStateMachine(registry, store=store, settings=settings, clock=clock)

        state = await machine.restore()

        assert state.status == ConnectionStatus.DISCONNECTED
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_restore_nothing(self, machine):
        """Test restore without a persisted session."""
        state = await machine.restore()
        assert state.status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_restore_without_expiry_is_unknown(self, registry, settings, clock):
        """Test that an unverifiable session is unknown, not connected."""
        store = InMemorySessionStore(persisted(clock, expiresAt=None))
        machine = ConnectionStateMachine(registry, store=store, settings=settings, clock=clock)

        state = await machine.restore()

        assert state.status == ConnectionStatus.UNKNOWN
        assert state.address is None

    @pytest.mark.asyncio
    async def test_restore_malformed_is_unknown(self, registry, settings, clock):
        """Test that a malformed record is unknown."""
        store = InMemorySessionStore(persisted(clock, status="teleporting"))
        machine = ConnectionStateMachine(registry, store=store, settings=settings, clock=clock)

        state = await machine.restore()

        assert state.status == ConnectionStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_restore_store_failure_is_unknown(self, registry, settings, clock):
        """Test that an unreadable store is unknown."""
        machine = ConnectionStateMachine(registry, store=BrokenStore(), settings=settings, clock=clock)

        state = await machine.restore()

        assert state.status == ConnectionStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_restore_unregistered_provider_is_unknown(self, settings, clock):
        """Test that a session whose provider is gone is unknown."""
        store = InMemorySessionStore(persisted(clock))
        machine = ConnectionStateMachine(ProviderRegistry(clock=clock), store=store, settings=settings, clock=clock)

        state = await machine.restore()

        assert state.status == ConnectionStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_restore_disconnected_record_cleared(self, registry, settings, clock):
        """Test that a persisted non-connected record is dropped."""
        store = InMemorySessionStore(persisted(clock, status="error"))
        machine = ConnectionStateMachine(registry, store=store, settings=settings, clock=clock)

        state = await machine.restore()

        assert state.status == ConnectionStatus.DISCONNECTED
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_reset(self, machine, store, provider):
        """Test reset clears state without remote teardown."""
        await machine.connect("scripted")
        await machine.reset()

        assert machine.get_state().status == ConnectionStatus.DISCONNECTED
        assert machine.get_metrics()["attempts"] == 0
        assert await store.load() is None
        assert provider.disconnect_calls == 0


# =============================================================================
# Reconnect Tests
# =============================================================================

class TestReconnect:
    """Tests for reconnect and the provider circuit breaker."""

    async def _fail_once(self, machine, provider):
        provider.connect_errors.append(UserRejectedError("User rejected the request"))
        with pytest.raises(ClassifiedError):
            await machine.connect("scripted")
        assert machine.get_state().status == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_reconnect_retries_transient_failures(self, machine, provider, sleeper):
        """Test that reconnect backs off per the network strategy and connects."""
        await self._fail_once(machine, provider)
        provider.connect_errors.extend([ConnectionError("connection refused")] * 2)

        state = await machine.reconnect()

        assert state.status == ConnectionStatus.CONNECTED
        assert sleeper.delays == [1.0, 2.0]
        assert provider.connect_calls == 4
        assert machine.get_metrics()["reconnects"] == 1
        assert machine.breaker.state("scripted") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_reconnect_gives_up_after_budget(self, machine, provider, sleeper):
        """Test that reconnect stops after the retry budget is spent."""
        await self._fail_once(machine, provider)
        provider.connect_errors.extend([ConnectionError("connection refused")] * 4)

        with pytest.raises(ClassifiedError) as exc_info:
            await machine.reconnect()

        assert exc_info.value.kind == ErrorKind.NETWORK_ERROR
        assert sleeper.delays == [1.0, 2.0, 4.0]
        assert machine.get_state().status == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_rejection_not_retried(self, machine, provider, sleeper):
        """Test that a rejected reconnect is not retried."""
        await self._fail_once(machine, provider)
        provider.connect_errors.append(UserRejectedError("User rejected the request"))

        with pytest.raises(ClassifiedError) as exc_info:
            await machine.reconnect()

        assert exc_info.value.kind == ErrorKind.USER_REJECTED
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_circuit_opens_and_stops_reconnect(self, registry, store, settings, clock, sleeper, provider):
        """Test that an open circuit ends reconnect early and refuses handshakes until it cools down."""
        tight = settings.model_copy(update={"provider_failure_threshold": 2, "provider_reset_seconds": 60.0})
        machine = ConnectionStateMachine(registry, store=store, settings=tight, clock=clock, sleep=sleeper)
        await self._fail_once(machine, provider)
        provider.connect_errors.extend([ConnectionError("connection refused")] * 4)

        with pytest.raises(ClassifiedError) as exc_info:
            await machine.reconnect()

        assert exc_info.value.kind == ErrorKind.NETWORK_ERROR
        assert sleeper.delays == [1.0]
        assert provider.connect_calls == 3
        assert machine.breaker.state("scripted") == CircuitState.OPEN

        with pytest.raises(ClassifiedError) as exc_info:
            await machine.connect("scripted")
        assert exc_info.value.details["retryAfter"] == 60.0
        assert provider.connect_calls == 3
        assert machine.get_state().status == ConnectionStatus.ERROR

        clock.advance(61)
        provider.connect_errors.clear()
        assert machine.breaker.state("scripted") == CircuitState.HALF_OPEN

        state = await machine.connect("scripted")
        assert state.status == ConnectionStatus.CONNECTED
        assert machine.breaker.state("scripted") == CircuitState.CLOSED
        assert machine.get_metrics()["circuits"] == {}

    @pytest.mark.asyncio
    async def test_reconnect_when_connected_is_noop(self, machine, provider):
        """Test that reconnecting a live session does not handshake again."""
        await machine.connect("scripted")

        state = await machine.reconnect()

        assert state.status == ConnectionStatus.CONNECTED
        assert provider.connect_calls == 1

    @pytest.mark.asyncio
    async def test_reconnect_without_provider(self, machine):
        """Test that there is nothing to reconnect after an explicit disconnect."""
        with pytest.raises(ClassifiedError) as exc_info:
            await machine.reconnect()
        assert exc_info.value.kind == ErrorKind.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_reconnect_after_unknown_restore(self, registry, settings, clock, sleeper, provider):
        """Test that an unverifiable restored session can be re-established."""
        store = InMemorySessionStore(persisted(clock, expiresAt=None))
        machine = ConnectionStateMachine(registry, store=store, settings=settings, clock=clock, sleep=sleeper)
        assert (await machine.restore()).status == ConnectionStatus.UNKNOWN

        state = await machine.reconnect()

        assert state.status == ConnectionStatus.CONNECTED
        assert state.address == "SIGNER_X"
        assert (await store.load())["expiresAt"] is not None


# =============================================================================
# Session Store Tests
# =============================================================================

class TestSessionStores:
    """Tests for the session store implementations."""

    @pytest.mark.asyncio
    async def test_json_file_round_trip(self, tmp_path):
        """Test saving, loading, and clearing a file-backed session."""
        store = JsonFileSessionStore(tmp_path / "session.json")
        assert await store.load() is None

        await store.save({"status": "connected", "address": "SP1"})
        assert await store.load() == {"status": "connected", "address": "SP1"}

        await store.clear()
        assert await store.load() is None
        await store.clear()

    @pytest.mark.asyncio
    async def test_json_file_corrupt(self, tmp_path):
        """Test that garbage on disk raises SessionStoreError."""
        path = tmp_path / "session.json"
        path.write_text("{not json")

        with pytest.raises(SessionStoreError):
            await JsonFileSessionStore(path).load()

    @pytest.mark.asyncio
    async def test_json_file_wrong_shape(self, tmp_path):
        """Test that a non-object document raises SessionStoreError."""
        path = tmp_path / "session.json"
        path.write_text(json.dumps(["connected"]))

        with pytest.raises(SessionStoreError):
            await JsonFileSessionStore(path).load()

    @pytest.mark.asyncio
    async def test_persisted_session_restores(self, tmp_path, registry, settings, clock):
        """Test a full persist-then-restore cycle through a file."""
        path = tmp_path / "session.json"
        first = ConnectionStateMachine(registry, store=JsonFileSessionStore(path), settings=settings, clock=clock)
        await first.connect("scripted")

        second = ConnectionStateMachine(registry, store=JsonFileSessionStore(path), settings=settings, clock=clock)
        state = await second.restore()

        assert state.status == ConnectionStatus.CONNECTED
        assert state.address == "SIGNER_X"

    def test_create_session_store(self, tmp_path):
        """Test store selection from configuration."""
        assert isinstance(create_session_store(""), InMemorySessionStore)
        assert isinstance(create_session_store(str(tmp_path / "s.json")), JsonFileSessionStore)

    def test_session_dict_uses_milliseconds(self):
        """Test the persisted timestamp format."""
        session = ConnectionSession(
            status=ConnectionStatus.CONNECTED,
            address="SP1",
            connected_at=1.5,
            expires_at=2.0,
        )
        data = session.to_dict()
        assert data["connectedAt"] == 1500
        assert data["expiresAt"] == 2000
        assert ConnectionSession.from_dict(data).expires_at == 2.0
