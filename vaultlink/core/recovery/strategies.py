"""
Recovery Strategies

Fixed retry descriptors per error kind.
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .errors import ErrorKind


@dataclass(frozen=True)
class RecoveryStrategy:
    """How a classified error is recovered from."""

    should_retry: bool
    max_retries: int = 0
    initial_delay: float = 0.0        # seconds
    backoff_multiplier: float = 1.0
    suggested_action: Optional[str] = None

    def get_delay(self, retry_index: int) -> float:
        """Delay before the retry with the given zero-based index."""
        return self.initial_delay * (self.backoff_multiplier ** retry_index)

    def allows_retry(self, retries_done: int) -> bool:
        return self.should_retry and retries_done < self.max_retries

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shouldRetry": self.should_retry,
            "maxRetries": self.max_retries,
            "initialDelay": self.initial_delay,
            "backoffMultiplier": self.backoff_multiplier,
            "suggestedAction": self.suggested_action,
        }


_NO_RETRY = dict(should_retry=False, max_retries=0, initial_delay=0.0, backoff_multiplier=1.0)

RECOVERY_STRATEGIES: Mapping[ErrorKind, RecoveryStrategy] = {
    ErrorKind.USER_REJECTED: RecoveryStrategy(
        **_NO_RETRY,
        suggested_action="Ask the user to approve the request and try again",
    ),
    ErrorKind.INVALID_REQUEST: RecoveryStrategy(
        **_NO_RETRY,
        suggested_action="Check the transaction details",
    ),
    ErrorKind.INSUFFICIENT_FUNDS: RecoveryStrategy(
        **_NO_RETRY,
        suggested_action="Add funds or reduce the amount",
    ),
    ErrorKind.SIMULATION_FAILED: RecoveryStrategy(
        **_NO_RETRY,
        suggested_action="Review the transaction before trying again",
    ),
    ErrorKind.WALLET_NOT_INSTALLED: RecoveryStrategy(
        **_NO_RETRY,
        suggested_action="Open the wallet install link",
    ),
    ErrorKind.NETWORK_ERROR: RecoveryStrategy(
        should_retry=True,
        max_retries=3,
        initial_delay=1.0,
        backoff_multiplier=2.0,
        suggested_action="Retrying automatically",
    ),
    ErrorKind.TIMEOUT: RecoveryStrategy(
        should_retry=True,
        max_retries=3,
        initial_delay=1.0,
        backoff_multiplier=2.0,
        suggested_action="Retrying automatically",
    ),
    ErrorKind.HARDWARE_ERROR: RecoveryStrategy(
        should_retry=True,
        max_retries=2,
        initial_delay=3.0,
        backoff_multiplier=1.0,
        suggested_action="Check that the device is connected and unlocked",
    ),
    ErrorKind.GAS_ESTIMATION_FAILED: RecoveryStrategy(
        should_retry=True,
        max_retries=2,
        initial_delay=1.0,
        backoff_multiplier=1.5,
        suggested_action="Retrying with a fresh fee estimate",
    ),
    ErrorKind.NONCE_CONFLICT: RecoveryStrategy(
        should_retry=True,
        max_retries=1,
        initial_delay=0.0,
        backoff_multiplier=1.0,
        suggested_action="Retrying with a refreshed nonce",
    ),
    ErrorKind.UNKNOWN: RecoveryStrategy(
        should_retry=True,
        max_retries=1,
        initial_delay=1.0,
        backoff_multiplier=1.0,
        suggested_action="Retrying once",
    ),
}


def get_recovery_strategy(kind: ErrorKind) -> RecoveryStrategy:
    return RECOVERY_STRATEGIES.get(kind, RECOVERY_STRATEGIES[ErrorKind.UNKNOWN])


def retrying_only(*kinds: ErrorKind) -> Dict[ErrorKind, RecoveryStrategy]:
    """The standard table with retries disabled for every kind not listed."""
    table: Dict[ErrorKind, RecoveryStrategy] = {}
    for kind, strategy in RECOVERY_STRATEGIES.items():
        if kind in kinds:
            table[kind] = strategy
        else:
            table[kind] = RecoveryStrategy(**_NO_RETRY, suggested_action=strategy.suggested_action)
    return table
