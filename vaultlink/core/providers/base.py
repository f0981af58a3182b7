from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ProviderAccount:
    """Identity returned by a successful handshake."""

    address: str
    public_key: str
    chain_id: Optional[str] = None


@dataclass(frozen=True)
class ProviderInfo:
    """Static description of a signing agent."""

    provider_id: str
    name: str
    install_url: Optional[str] = None
    hardware: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "providerId": self.provider_id,
            "name": self.name,
            "installUrl": self.install_url,
            "hardware": self.hardware,
        }


class ProviderAdapter(ABC):
    """
    Capability contract every signing agent satisfies.

    Adapters surface failures as raw exceptions; classification happens in
    the core, never here.
    """

    provider_id: str
    name: str
    install_url: Optional[str] = None
    hardware: bool = False

    @abstractmethod
    async def connect(self, metadata: Dict[str, Any]) -> ProviderAccount:
        """Perform the handshake and return the authorized identity"""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Tear down the remote binding"""
        pass

    @abstractmethod
    async def sign_transaction(self, payload: Dict[str, Any]) -> str:
        """Sign a transaction payload and return the signature"""
        pass

    @abstractmethod
    async def sign_message(self, text: str) -> str:
        """Sign an arbitrary text message"""
        pass

    @abstractmethod
    async def is_installed(self) -> bool:
        """Whether the agent is available in this environment"""
        pass

    def info(self) -> ProviderInfo:
        return ProviderInfo(
            provider_id=self.provider_id,
            name=self.name,
            install_url=self.install_url,
            hardware=self.hardware,
        )
