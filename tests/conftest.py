"""
Shared fixtures: a controllable clock, a recording sleep, a scriptable
provider, and a scriptable ledger endpoint.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from vaultlink.config import Settings
from vaultlink.core.artifact import SignedArtifact
from vaultlink.core.providers import ProviderAccount, ProviderAdapter, ProviderRegistry
from vaultlink.core.transactions import BroadcastEndpoint, BroadcastReceipt
from vaultlink.service import WalletService


RECIPIENT = "SPA1B2C3D4E5F6G7H8J9K0M1N2P3"


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stands in for asyncio.sleep and remembers every requested delay."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ScriptedProvider(ProviderAdapter):
    """
    Provider whose behavior is driven by queues of errors.

    Each call pops the next error from its queue and raises it; with an
    empty queue the call succeeds.
    """

    def __init__(self, provider_id: str = "scripted", address: str = "SIGNER_X", name: str = "Scripted"):
        self.provider_id = provider_id
        self.name = name
        self.install_url = "https://example.com/install"
        self.address = address
        self.public_key = f"pk-{address}"
        self.installed = True

        self.connect_errors: List[BaseException] = []
        self.sign_errors: List[BaseException] = []
        self.disconnect_error: Optional[BaseException] = None
        self.connect_gate: Optional[asyncio.Event] = None

        self.connect_calls = 0
        self.last_metadata: Optional[Dict[str, Any]] = None
        self.disconnect_calls = 0
        self.signed_payloads: List[Dict[str, Any]] = []
        self.signed_messages: List[str] = []

    async def connect(self, metadata: Dict[str, Any]) -> ProviderAccount:
        self.connect_calls += 1
        self.last_metadata = metadata
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        return ProviderAccount(address=self.address, public_key=self.public_key, chain_id="stacks:1")

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        if self.disconnect_error is not None:
            raise self.disconnect_error

    async def sign_transaction(self, payload: Dict[str, Any]) -> str:
        if self.sign_errors:
            raise self.sign_errors.pop(0)
        self.signed_payloads.append(payload)
        return f"sig-{self.address}-{len(self.signed_payloads)}"

    async def sign_message(self, text: str) -> str:
        if self.sign_errors:
            raise self.sign_errors.pop(0)
        self.signed_messages.append(text)
        return f"msg-sig-{self.address}"

    async def is_installed(self) -> bool:
        return self.installed


class ScriptedLedger(BroadcastEndpoint):
    """Ledger endpoint that raises queued errors, then accepts."""

    def __init__(self):
        self.errors: List[BaseException] = []
        self.rejections: List[str] = []
        self.submitted: List[SignedArtifact] = []

    async def submit(self, artifact: SignedArtifact) -> BroadcastReceipt:
        self.submitted.append(artifact)
        if self.errors:
            raise self.errors.pop(0)
        if self.rejections:
            return BroadcastReceipt(accepted=False, error=self.rejections.pop(0))
        return BroadcastReceipt(accepted=True, transaction_id=f"0xtx{len(self.submitted)}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(_env_file=None, session_store_path="", remote_signer_url="", broadcast_url="")


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def ledger() -> ScriptedLedger:
    return ScriptedLedger()


@pytest.fixture
def registry(provider: ScriptedProvider, clock: FakeClock) -> ProviderRegistry:
    registry = ProviderRegistry(clock=clock)
    registry.register_adapter(provider)
    return registry


@pytest.fixture
def service(
    settings: Settings,
    registry: ProviderRegistry,
    ledger: ScriptedLedger,
    clock: FakeClock,
    sleeper: RecordingSleep,
) -> WalletService:
    return WalletService(
        settings=settings,
        registry=registry,
        broadcaster=ledger,
        clock=clock,
        sleep=sleeper,
    )


@pytest.fixture
def intent() -> Dict[str, Any]:
    return {"recipient": RECIPIENT, "amount": "12.5", "memo": "rent"}
