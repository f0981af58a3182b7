"""
Error Handler

Single entry point that turns any raised fault into a ClassifiedError,
logs it with structured context, appends it to the audit log, and
publishes it on the event channel.
"""

from typing import Optional

import structlog

from ..events import EventBus, EventType
from .audit import ErrorAuditLog
from .errors import ClassifiedError, classify_error


logger = structlog.stdlib.get_logger(__name__)


class ErrorHandler:
    def __init__(
        self,
        audit_log: Optional[ErrorAuditLog] = None,
        events: Optional[EventBus] = None,
    ):
        self.audit_log = audit_log if audit_log is not None else ErrorAuditLog()
        self.events = events

    def classify(
        self,
        error: BaseException,
        provider_id: Optional[str] = None,
        operation: Optional[str] = None,
        fingerprint: Optional[str] = None,
    ) -> ClassifiedError:
        """Classify without recording. Already-classified errors gain missing context."""
        if isinstance(error, ClassifiedError):
            error.provider_id = error.provider_id or provider_id
            error.operation = error.operation or operation
            error.fingerprint = error.fingerprint or fingerprint
            return error

        return ClassifiedError(
            classify_error(error),
            raw=error,
            provider_id=provider_id,
            operation=operation,
            fingerprint=fingerprint,
        )

    def handle(
        self,
        error: BaseException,
        provider_id: Optional[str] = None,
        operation: Optional[str] = None,
        fingerprint: Optional[str] = None,
    ) -> ClassifiedError:
        """Classify and record an error once; returns the ClassifiedError to raise."""
        classified = self.classify(error, provider_id, operation, fingerprint)
        if classified.recorded:
            return classified

        classified.recorded = True
        self.audit_log.append(classified)

        logger.warning(
            "classified_error",
            kind=classified.kind.value,
            detail=classified.detail,
            provider_id=classified.provider_id,
            operation=classified.operation,
            fingerprint=classified.fingerprint,
            recoverable=classified.recoverable,
            raw_type=type(classified.raw).__name__ if classified.raw is not None else None,
        )

        if self.events is not None:
            self.events.publish(EventType.ERROR, classified)

        return classified
