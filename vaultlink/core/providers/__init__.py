"""
Provider Adapters

The capability contract for signing agents, the registry that loads them,
and the bundled adapter variants.
"""

from .base import ProviderAccount, ProviderAdapter, ProviderInfo
from .registry import ProviderFactory, ProviderHandle, ProviderRegistry
from .local import LocalKeyProvider, verify_payload_signature, verify_signature
from .remote import RemoteSignerProvider

__all__ = [
    "ProviderAccount",
    "ProviderAdapter",
    "ProviderInfo",
    "ProviderFactory",
    "ProviderHandle",
    "ProviderRegistry",
    "LocalKeyProvider",
    "RemoteSignerProvider",
    "verify_signature",
    "verify_payload_signature",
]
