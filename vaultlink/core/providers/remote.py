"""
Remote signing agent reached over JSON-RPC.

Talks to a signer daemon, a hardware-wallet bridge, or a relay that forwards
requests to a mobile wallet. Error codes follow the EIP-1193 convention
(4001 user rejected, 4100 unauthorized, 4900/4901 disconnected).
"""

import itertools
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..recovery.errors import (
    HardwareDeviceError,
    InvalidRequestError,
    UserRejectedError,
    WalletNotInstalledError,
)
from .base import ProviderAccount, ProviderAdapter


logger = logging.getLogger(__name__)

_request_ids = itertools.count(1)


class RemoteSignerProvider(ProviderAdapter):
    def __init__(
        self,
        url: str,
        provider_id: str = "remote",
        name: str = "Remote Signer",
        install_url: Optional[str] = None,
        hardware: bool = False,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.url = url
        self.provider_id = provider_id
        self.name = name
        self.install_url = install_url
        self.hardware = hardware
        self._owns_client = client is None
        self._client = client if client is not None else httpx.AsyncClient(timeout=timeout)
        self._session_token: Optional[str] = None

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": next(_request_ids),
        }
        headers = {}
        if self._session_token:
            headers["Authorization"] = f"Bearer {self._session_token}"

        response = await self._client.post(self.url, json=payload, headers=headers)
        response.raise_for_status()
        result = response.json()

        if result.get("error"):
            raise self._map_rpc_error(result["error"])

        return result.get("result")

    def _map_rpc_error(self, error: Dict[str, Any]) -> Exception:
        code = error.get("code")
        message = error.get("message") or "Remote signer error"

        if code in (4001, 4100):
            return UserRejectedError(message)
        if code in (4900, 4901):
            return ConnectionError(message)
        if code == 4200:
            return WalletNotInstalledError(message)
        if code in (-32600, -32602):
            return InvalidRequestError(message)
        if code == 5000:
            return HardwareDeviceError(message)
        return RuntimeError(f"RPC error {code}: {message}")

    async def connect(self, metadata: Dict[str, Any]) -> ProviderAccount:
        result = await self._rpc("wallet_connect", [metadata])
        self._session_token = result.get("sessionToken")
        return ProviderAccount(
            address=result["address"],
            public_key=result["publicKey"],
            chain_id=result.get("chainId"),
        )

    async def disconnect(self) -> None:
        try:
            await self._rpc("wallet_disconnect", [])
        finally:
            self._session_token = None

    async def sign_transaction(self, payload: Dict[str, Any]) -> str:
        result = await self._rpc("wallet_signTransaction", [payload])
        return result["signature"]

    async def sign_message(self, text: str) -> str:
        result = await self._rpc("wallet_signMessage", [{"message": text}])
        return result["signature"]

    async def is_installed(self) -> bool:
        try:
            await self._rpc("wallet_ping", [])
            return True
        except httpx.HTTPError as e:
            logger.info(f"Remote signer {self.provider_id} unreachable: {e}")
            return False

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
