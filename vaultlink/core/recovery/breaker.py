"""
Provider Circuit Breaker

Stops handshakes against a provider that keeps failing.

States per provider:
- CLOSED: normal operation, counting consecutive failures
- OPEN: refusing handshakes until the reset timeout has passed
- HALF_OPEN: timeout passed; the next success closes, the next failure reopens
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .errors import ProviderUnavailableError


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Configuration for the circuit breaker."""

    failure_threshold: int = 5      # Consecutive failures before opening
    reset_timeout_seconds: float = 60.0


@dataclass
class _Circuit:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    opened_at: Optional[float] = None


class ProviderCircuitBreaker:
    """One circuit per provider id."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config if config is not None else CircuitBreakerConfig()
        self._clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._circuits: Dict[str, _Circuit] = {}

    def state(self, provider_id: str) -> CircuitState:
        circuit = self._circuits.get(provider_id)
        if circuit is None:
            return CircuitState.CLOSED
        if circuit.state == CircuitState.OPEN and self.retry_after(provider_id) <= 0:
            circuit.state = CircuitState.HALF_OPEN
            self.logger.info(f"Circuit for {provider_id} entering half-open state")
        return circuit.state

    def allows(self, provider_id: str) -> bool:
        return self.state(provider_id) != CircuitState.OPEN

    def retry_after(self, provider_id: str) -> float:
        """Seconds until an open circuit admits a trial handshake."""
        circuit = self._circuits.get(provider_id)
        if circuit is None or circuit.opened_at is None:
            return 0.0
        elapsed = self._clock() - circuit.opened_at
        return max(0.0, self.config.reset_timeout_seconds - elapsed)

    def check(self, provider_id: str) -> None:
        """
        Raises:
            ProviderUnavailableError: the provider's circuit is open
        """
        if not self.allows(provider_id):
            wait = self.retry_after(provider_id)
            raise ProviderUnavailableError(
                f"Provider {provider_id} is temporarily unavailable; retry in {wait:.0f}s",
                retry_after=wait,
            )

    def record_success(self, provider_id: str) -> None:
        circuit = self._circuits.pop(provider_id, None)
        if circuit is not None and circuit.state != CircuitState.CLOSED:
            self.logger.info(f"Circuit for {provider_id} closed, provider recovered")

    def record_failure(self, provider_id: str) -> None:
        circuit = self._circuits.setdefault(provider_id, _Circuit())
        circuit.failure_count += 1

        # A trial failure reopens at once
        if self.state(provider_id) == CircuitState.HALF_OPEN or (
            circuit.failure_count >= self.config.failure_threshold
        ):
            circuit.state = CircuitState.OPEN
            circuit.opened_at = self._clock()
            self.logger.warning(
                f"Circuit for {provider_id} opened after {circuit.failure_count} failures"
            )

    def reset(self, provider_id: Optional[str] = None) -> None:
        if provider_id is None:
            self._circuits.clear()
        else:
            self._circuits.pop(provider_id, None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            provider_id: {
                "state": self.state(provider_id).value,
                "failures": circuit.failure_count,
                "retryAfter": self.retry_after(provider_id),
            }
            for provider_id, circuit in self._circuits.items()
        }
