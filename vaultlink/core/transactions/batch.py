"""
Batch signing.

Each intent runs through prepare and sign on its own; one failing item
never rolls back or stops the others. Progress goes from 0 to 100:
0-5 for validation of the batch itself, 5-95 across the items, 100 when done.
"""

import logging
import secrets
from typing import Callable, Optional, Sequence

from ...config import Settings
from ..events import EventBus, EventType
from ..recovery.errors import ClassifiedError, invalid_request
from .models import BatchItemResult, BatchProgress, BatchResult
from .pipeline import TransactionPipeline
from .validation import IntentLike


logger = logging.getLogger(__name__)


ProgressCallback = Callable[[BatchProgress], None]


class BatchSigner:
    def __init__(
        self,
        pipeline: TransactionPipeline,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
    ):
        self.pipeline = pipeline
        self.events = events if events is not None else pipeline.events
        self.settings = settings if settings is not None else pipeline.settings

    async def sign_batch(
        self,
        intents: Sequence[IntentLike],
        on_progress: Optional[ProgressCallback] = None,
        batch_id: Optional[str] = None,
    ) -> BatchResult:
        """
        Prepare and sign every intent in order.

        Raises:
            ClassifiedError(invalid_request): the batch is empty or larger than
                max_batch_size. Per-item failures are reported in the result.
        """
        total = len(intents)
        if total == 0:
            raise self.pipeline.error_handler.handle(
                invalid_request("Invalid batch: no transactions provided"), operation="sign_batch"
            )
        if total > self.settings.max_batch_size:
            raise self.pipeline.error_handler.handle(
                invalid_request(f"Batch size exceeds maximum ({self.settings.max_batch_size} transactions)"),
                operation="sign_batch",
            )

        batch_id = batch_id or f"batch_{secrets.token_hex(8)}"
        result = BatchResult(batch_id=batch_id)
        self._report(result, 0, "Starting batch signing", on_progress)
        self._report(result, 5, "Batch validated", on_progress)

        for index, intent in enumerate(intents):
            self._report(
                result,
                5 + (index / total) * 90,
                f"Signing transaction {index + 1}/{total}",
                on_progress,
            )

            fingerprint = None
            try:
                record = await self.pipeline.prepare(intent)
                fingerprint = record.fingerprint
                signed = await self.pipeline.sign(record)
                item = BatchItemResult(
                    index=index,
                    status="signed" if signed.is_signed else "pending",
                    fingerprint=fingerprint,
                )
                message = f"Transaction {index + 1} signed"
            except ClassifiedError as e:
                item = BatchItemResult(index=index, status="failed", fingerprint=fingerprint, error=e)
                message = f"Transaction {index + 1} failed"

            result.items.append(item)
            self._report(result, 5 + ((index + 1) / total) * 90, message, on_progress)

        logger.info(
            f"Batch {batch_id}: {result.total_signed} signed, "
            f"{result.total_pending} pending, {result.total_failed} failed"
        )
        self._report(result, 100, "Batch signing completed", on_progress)
        return result

    def _report(
        self,
        result: BatchResult,
        progress: float,
        message: str,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        update = BatchProgress(
            batch_id=result.batch_id,
            progress=round(progress, 2),
            message=message,
            total_signed=result.total_signed,
            total_pending=result.total_pending,
            total_failed=result.total_failed,
        )
        if on_progress is not None:
            try:
                on_progress(update)
            except Exception as e:
                logger.error(f"Batch progress callback failed: {e}")
        self.events.publish(EventType.BATCH_PROGRESS, update)
