"""
Error Classification

Defines the error taxonomy for wallet connection and signing operations.
Adapters raise raw errors; this module maps them to an ErrorKind and wraps
them in a ClassifiedError carrying a fixed, user-facing message.
"""

import asyncio
from enum import Enum
from typing import Any, Dict, Optional

import httpx


class ErrorKind(str, Enum):
    """Taxonomy of faults surfaced by the signing core."""

    USER_REJECTED = "user_rejected"                  # Signer declined
    INVALID_REQUEST = "invalid_request"              # Malformed intent or policy violation
    NETWORK_ERROR = "network_error"                  # Transient connectivity failure
    TIMEOUT = "timeout"                              # Deadline exceeded
    HARDWARE_ERROR = "hardware_error"                # Signing device fault
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NONCE_CONFLICT = "nonce_conflict"
    GAS_ESTIMATION_FAILED = "gas_estimation_failed"
    SIMULATION_FAILED = "simulation_failed"
    WALLET_NOT_INSTALLED = "wallet_not_installed"
    UNKNOWN = "unknown"


FRIENDLY_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.USER_REJECTED: "You rejected the request in your wallet.",
    ErrorKind.INVALID_REQUEST: "The request is invalid.",
    ErrorKind.NETWORK_ERROR: "Network error. Please check your connection.",
    ErrorKind.TIMEOUT: "The request timed out.",
    ErrorKind.HARDWARE_ERROR: "Hardware wallet error. Check your device.",
    ErrorKind.INSUFFICIENT_FUNDS: "Insufficient balance to complete this transaction.",
    ErrorKind.NONCE_CONFLICT: "Transaction nonce conflict.",
    ErrorKind.GAS_ESTIMATION_FAILED: "Failed to estimate the transaction fee.",
    ErrorKind.SIMULATION_FAILED: "Transaction simulation failed.",
    ErrorKind.WALLET_NOT_INSTALLED: "Wallet is not installed. Install it to continue.",
    ErrorKind.UNKNOWN: "An unexpected error occurred.",
}


# Raw errors adapters and collaborators may raise for an exact classification
class WalletError(Exception):
    """Base class for raw wallet faults with a known kind."""

    kind: ErrorKind = ErrorKind.UNKNOWN


class UserRejectedError(WalletError):
    kind = ErrorKind.USER_REJECTED


class InvalidRequestError(WalletError):
    kind = ErrorKind.INVALID_REQUEST


class WalletNotInstalledError(WalletError):
    kind = ErrorKind.WALLET_NOT_INSTALLED


class HardwareDeviceError(WalletError):
    kind = ErrorKind.HARDWARE_ERROR


class InsufficientFundsError(WalletError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class NonceConflictError(WalletError):
    kind = ErrorKind.NONCE_CONFLICT


class GasEstimationError(WalletError):
    kind = ErrorKind.GAS_ESTIMATION_FAILED


class SimulationFailedError(WalletError):
    kind = ErrorKind.SIMULATION_FAILED


class ProviderNotFoundError(InvalidRequestError):
    """No adapter is registered under the requested provider id."""


class ProviderUnavailableError(WalletError):
    """A provider's circuit is open; handshakes are refused until it cools down."""

    kind = ErrorKind.NETWORK_ERROR

    def __init__(self, message: str, retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class ClassifiedError(Exception):
    """
    A fault mapped to one taxonomy kind.

    str() of a ClassifiedError is always the fixed friendly message for its
    kind; the underlying exception stays available as `raw` (and __cause__)
    for logging and telemetry.
    """

    def __init__(
        self,
        kind: ErrorKind,
        raw: Optional[BaseException] = None,
        detail: Optional[str] = None,
        provider_id: Optional[str] = None,
        operation: Optional[str] = None,
        fingerprint: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.kind = kind
        self.friendly_message = FRIENDLY_MESSAGES[kind]
        super().__init__(self.friendly_message)
        self.raw = raw
        self.detail = detail or (str(raw) if raw is not None else None)
        self.provider_id = provider_id
        self.operation = operation
        self.fingerprint = fingerprint
        self.details = details or {}
        self.recorded = False
        if raw is not None:
            self.__cause__ = raw

    @property
    def strategy(self):
        from .strategies import get_recovery_strategy

        return get_recovery_strategy(self.kind)

    @property
    def recoverable(self) -> bool:
        return self.strategy.should_retry

    @property
    def suggested_action(self) -> Optional[str]:
        return self.strategy.suggested_action

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.friendly_message,
            "detail": self.detail,
            "providerId": self.provider_id,
            "operation": self.operation,
            "fingerprint": self.fingerprint,
            "recoverable": self.recoverable,
            "suggestedAction": self.suggested_action,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"ClassifiedError(kind={self.kind.value!r}, detail={self.detail!r})"


def invalid_request(detail: str, **kwargs: Any) -> ClassifiedError:
    """Shortcut for policy and validation failures raised by the core itself."""
    return ClassifiedError(ErrorKind.INVALID_REQUEST, detail=detail, **kwargs)


# Message patterns, checked in order; first match wins
_MESSAGE_PATTERNS = [
    (ErrorKind.WALLET_NOT_INSTALLED, ["not installed", "no provider", "extension not found"]),
    (ErrorKind.USER_REJECTED, ["rejected", "cancelled", "canceled", "denied", "declined"]),
    (ErrorKind.TIMEOUT, ["timeout", "timed out", "deadline"]),
    (ErrorKind.NONCE_CONFLICT, ["nonce"]),
    (ErrorKind.GAS_ESTIMATION_FAILED, ["gas estimation", "estimate gas", "fee estimation"]),
    (ErrorKind.SIMULATION_FAILED, ["simulation"]),
    (ErrorKind.INSUFFICIENT_FUNDS, ["insufficient", "not enough", "balance too low", "exceeds balance"]),
    (ErrorKind.HARDWARE_ERROR, ["hardware", "device", "ledger locked", "usb"]),
    (ErrorKind.NETWORK_ERROR, ["network", "connection", "unreachable", "refused", "dns", "socket"]),
    (ErrorKind.INVALID_REQUEST, ["invalid", "malformed"]),
]


def classify_error(error: BaseException) -> ErrorKind:
    """
    Map a raised fault to its taxonomy kind.

    Pure function: typed errors first, then standard timeout/transport
    exceptions, then message patterns. Anything else is UNKNOWN.
    """
    if isinstance(error, ClassifiedError):
        return error.kind

    if isinstance(error, WalletError):
        return error.kind

    if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ErrorKind.TIMEOUT

    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return ErrorKind.NETWORK_ERROR

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status in (408, 504):
            return ErrorKind.TIMEOUT
        if status == 429 or status >= 500:
            return ErrorKind.NETWORK_ERROR
        return ErrorKind.INVALID_REQUEST

    message = str(error).lower()
    for kind, patterns in _MESSAGE_PATTERNS:
        if any(p in message for p in patterns):
            return kind

    return ErrorKind.UNKNOWN
