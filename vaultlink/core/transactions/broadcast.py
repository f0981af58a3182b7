"""
Ledger broadcast endpoints.

The endpoint reports a rejection as an unaccepted receipt; transport and
HTTP failures propagate as raw httpx errors for the classifier.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from ..artifact import SignedArtifact
from .models import BroadcastReceipt


logger = logging.getLogger(__name__)


class BroadcastRejectedError(Exception):
    """The ledger refused an artifact. Classified by its message."""

    def __init__(self, message: str, receipt: Optional[BroadcastReceipt] = None):
        super().__init__(message)
        self.receipt = receipt


class BroadcastEndpoint(ABC):
    @abstractmethod
    async def submit(self, artifact: SignedArtifact) -> BroadcastReceipt:
        """Submit a signed artifact to the ledger"""
        pass


class HttpBroadcastEndpoint(BroadcastEndpoint):
    """POSTs the artifact as JSON and reads back a transaction id."""

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.url = url
        self._owns_client = client is None
        self._client = client if client is not None else httpx.AsyncClient(timeout=timeout)

    async def submit(self, artifact: SignedArtifact) -> BroadcastReceipt:
        response = await self._client.post(self.url, json=artifact.to_dict())

        # The ledger answers 400 with a reason when it rejects a transaction
        if response.status_code == 400:
            body = self._json(response)
            reason = body.get("reason") or body.get("error") or response.text
            logger.info(f"Broadcast of {artifact.fingerprint[:12]} rejected: {reason}")
            return BroadcastReceipt(accepted=False, error=str(reason))

        response.raise_for_status()
        body = self._json(response)
        txid = body.get("txid") or body.get("transactionId")
        if not txid:
            return BroadcastReceipt(accepted=False, error="Broadcast response did not include a transaction id")
        return BroadcastReceipt(accepted=True, transaction_id=str(txid))

    def _json(self, response: httpx.Response) -> dict:
        try:
            body = response.json()
        except ValueError:
            return {}
        if isinstance(body, str):
            return {"txid": body}
        return body if isinstance(body, dict) else {}

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
