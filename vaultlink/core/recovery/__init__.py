"""
Error Recovery Module

Provides error classification, retry policies, an audit log, the retry
executor used by the connection and transaction layers, and a per-provider
circuit breaker.
"""

from .errors import (
    ErrorKind,
    FRIENDLY_MESSAGES,
    ClassifiedError,
    WalletError,
    UserRejectedError,
    InvalidRequestError,
    WalletNotInstalledError,
    HardwareDeviceError,
    InsufficientFundsError,
    NonceConflictError,
    GasEstimationError,
    SimulationFailedError,
    ProviderNotFoundError,
    ProviderUnavailableError,
    classify_error,
    invalid_request,
)
from .strategies import RecoveryStrategy, RECOVERY_STRATEGIES, get_recovery_strategy, retrying_only
from .audit import ErrorAuditLog, ErrorRecord
from .handler import ErrorHandler
from .executor import RecoveryExecutor, ExecutionResult
from .breaker import CircuitBreakerConfig, CircuitState, ProviderCircuitBreaker

__all__ = [
    # Errors
    "ErrorKind",
    "FRIENDLY_MESSAGES",
    "ClassifiedError",
    "WalletError",
    "UserRejectedError",
    "InvalidRequestError",
    "WalletNotInstalledError",
    "HardwareDeviceError",
    "InsufficientFundsError",
    "NonceConflictError",
    "GasEstimationError",
    "SimulationFailedError",
    "ProviderNotFoundError",
    "ProviderUnavailableError",
    "classify_error",
    "invalid_request",
    # Strategies
    "RecoveryStrategy",
    "RECOVERY_STRATEGIES",
    "get_recovery_strategy",
    "retrying_only",
    # Audit
    "ErrorAuditLog",
    "ErrorRecord",
    "ErrorHandler",
    # Executor
    "RecoveryExecutor",
    "ExecutionResult",
    # Circuit breaker
    "CircuitBreakerConfig",
    "CircuitState",
    "ProviderCircuitBreaker",
]
