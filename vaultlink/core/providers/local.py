"""
In-process signing agent backed by an ed25519 key.

Useful for automation accounts and co-signers that run next to the
application, and as a reference implementation of the adapter contract.
"""

from typing import Any, Dict, Optional

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from ..canonical import canonical_json_bytes
from ..recovery.errors import InvalidRequestError, UserRejectedError
from .base import ProviderAccount, ProviderAdapter


class LocalKeyProvider(ProviderAdapter):
    def __init__(
        self,
        provider_id: str = "local",
        signing_key: Optional[SigningKey] = None,
        seed: Optional[bytes] = None,
        address: Optional[str] = None,
        chain_id: str = "stacks:1",
        name: str = "Local Key",
    ):
        if signing_key is None:
            signing_key = SigningKey(seed) if seed is not None else SigningKey.generate()
        self.provider_id = provider_id
        self.name = name
        self._signing_key = signing_key
        self._chain_id = chain_id
        self._address = address or self.public_key_hex
        self._connected = False
        # Flip to simulate the key holder declining a request
        self.auto_approve = True

    @property
    def public_key_hex(self) -> str:
        return self._signing_key.verify_key.encode().hex()

    @property
    def address(self) -> str:
        return self._address

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self, metadata: Dict[str, Any]) -> ProviderAccount:
        if not self.auto_approve:
            raise UserRejectedError("User rejected the connection request")
        self._connected = True
        return ProviderAccount(
            address=self._address,
            public_key=self.public_key_hex,
            chain_id=self._chain_id,
        )

    async def disconnect(self) -> None:
        self._connected = False

    async def sign_transaction(self, payload: Dict[str, Any]) -> str:
        return self._sign(canonical_json_bytes(payload))

    async def sign_message(self, text: str) -> str:
        return self._sign(text.encode("utf-8"))

    async def is_installed(self) -> bool:
        return True

    def _sign(self, message: bytes) -> str:
        if not self._connected:
            raise InvalidRequestError("Provider is not connected")
        if not self.auto_approve:
            raise UserRejectedError("User rejected the signing request")
        return self._signing_key.sign(message).signature.hex()


def verify_signature(public_key_hex: str, message: bytes, signature_hex: str) -> bool:
    """Check an ed25519 signature produced by LocalKeyProvider."""
    try:
        verify_key = VerifyKey(bytes.fromhex(public_key_hex))
        verify_key.verify(message, bytes.fromhex(signature_hex))
        return True
    except (BadSignatureError, ValueError):
        return False


def verify_payload_signature(public_key_hex: str, payload: Dict[str, Any], signature_hex: str) -> bool:
    return verify_signature(public_key_hex, canonical_json_bytes(payload), signature_hex)
