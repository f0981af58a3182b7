"""
Recovery Executor

Runs an async operation under the retry policy of whatever error kind it
raises. Retries are transparent to the caller: only when the budget for the
current kind is exhausted (or the kind is never retried) does the
classified error surface.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Mapping, Optional, TypeVar

from .errors import ClassifiedError, ErrorKind
from .handler import ErrorHandler
from .strategies import RECOVERY_STRATEGIES, RecoveryStrategy

T = TypeVar("T")

# Called before each retry with the error that triggered it and the retry number (1-based)
RetryHook = Callable[[ClassifiedError, int], Awaitable[None]]
SleepFunc = Callable[[float], Awaitable[None]]


@dataclass
class ExecutionResult:
    """Result of an operation execution."""

    success: bool
    result: Optional[Any] = None
    error: Optional[ClassifiedError] = None

    # Execution metadata
    attempts: int = 1
    retries: int = 0
    delays: List[float] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def recovered(self) -> bool:
        return self.success and self.retries > 0

    @property
    def total_duration_seconds(self) -> float:
        if not self.started_at or not self.completed_at:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    def unwrap(self) -> Any:
        """Return the result, or raise the classified error."""
        if not self.success:
            raise self.error
        return self.result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error.to_dict() if self.error else None,
            "attempts": self.attempts,
            "retries": self.retries,
            "delays": list(self.delays),
            "recovered": self.recovered,
            "totalDurationSeconds": self.total_duration_seconds,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


class RecoveryExecutor:
    """
    Executes operations with classification-driven retries.

    Features:
    - Every failure is classified and recorded through the ErrorHandler
    - Per-kind retry budget and exponential backoff
    - Injectable sleep so delays can be observed without waiting
    - Optional hook before each retry (e.g. refreshing a nonce)
    """

    def __init__(
        self,
        error_handler: Optional[ErrorHandler] = None,
        strategies: Optional[Mapping[ErrorKind, RecoveryStrategy]] = None,
        sleep: SleepFunc = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self.error_handler = error_handler if error_handler is not None else ErrorHandler()
        self.strategies = dict(strategies or RECOVERY_STRATEGIES)
        self._sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    def strategy_for(self, kind: ErrorKind) -> RecoveryStrategy:
        return self.strategies.get(kind, self.strategies[ErrorKind.UNKNOWN])

    async def execute(
        self,
        operation: Callable[[], Coroutine[Any, Any, T]],
        operation_name: str = "operation",
        provider_id: Optional[str] = None,
        fingerprint: Optional[str] = None,
        on_retry: Optional[RetryHook] = None,
        can_retry: Optional[Callable[[ClassifiedError], bool]] = None,
    ) -> ExecutionResult:
        """
        Execute an operation with retry support.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            operation_name: Name for logging and error context
            provider_id: Provider the operation talks to
            fingerprint: Transaction fingerprint the operation belongs to
            on_retry: Awaited before each retry
            can_retry: Vetoes a retry the strategy would otherwise allow

        Returns:
            ExecutionResult with success/failure info
        """
        started_at = datetime.now(timezone.utc)
        attempts = 0
        retries = 0
        delays: List[float] = []

        while True:
            attempts += 1
            try:
                result = await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = self.error_handler.handle(
                    e,
                    provider_id=provider_id,
                    operation=operation_name,
                    fingerprint=fingerprint,
                )
                strategy = self.strategy_for(error.kind)

                vetoed = can_retry is not None and not can_retry(error)
                if vetoed or not strategy.allows_retry(retries):
                    if vetoed:
                        self.logger.error(
                            f"{operation_name} stopped retrying after {attempts} attempts: {error.kind.value}"
                        )
                    elif strategy.should_retry:
                        self.logger.error(
                            f"{operation_name} failed after {attempts} attempts: {error.kind.value}"
                        )
                    else:
                        self.logger.error(
                            f"{operation_name} failed with non-retryable error: {error.kind.value}"
                        )
                    return ExecutionResult(
                        success=False,
                        error=error,
                        attempts=attempts,
                        retries=retries,
                        delays=delays,
                        started_at=started_at,
                        completed_at=datetime.now(timezone.utc),
                    )

                delay = strategy.get_delay(retries)
                retries += 1
                self.logger.warning(
                    f"{operation_name} attempt {attempts} failed ({error.kind.value}). "
                    f"Retry {retries}/{strategy.max_retries} in {delay:.1f}s"
                )

                if on_retry is not None:
                    await on_retry(error, retries)
                if delay > 0:
                    await self._sleep(delay)
                delays.append(delay)
                continue

            return ExecutionResult(
                success=True,
                result=result,
                attempts=attempts,
                retries=retries,
                delays=delays,
                started_at=started_at,
                completed_at=datetime.now(timezone.utc),
            )
