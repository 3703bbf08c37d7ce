"""Idempotent batch upserts into the target store with bounded retry."""

import time
import logging
from typing import Callable, List

from .base import BaseLoader, BatchResult
from ..errors import BatchWriteError, TargetStoreError
from ..models.record import RecordStatus, TargetRecord
from ..services.target_store import CONFLICT_RESOLUTION, TargetStore

logger = logging.getLogger(__name__)


class BatchLoader(BaseLoader):
    """
    Upserts batches keyed on the primary key.

    conflict_policy "skip" leaves existing rows untouched
    (resolution=ignore-duplicates); "overwrite" merges them
    (resolution=merge-duplicates). Network errors, timeouts, 5xx and 429
    are retried with exponential backoff; other 4xx fail the batch at once.
    """

    def __init__(
        self,
        target_store: TargetStore,
        batch_size: int = 100,
        conflict_policy: str = "skip",
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        dry_run: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the batch loader.

        Args:
            target_store: Target store client
            batch_size: Records per upsert request
            conflict_policy: "skip" or "overwrite"
            max_retries: Extra attempts after the first for retryable errors
            backoff_factor: Base delay; attempt n waits backoff_factor * 2 ** (n - 1)
            dry_run: Count records as loaded without writing
            sleep: Sleep function (overridable in tests)
        """
        super().__init__(batch_size=batch_size, dry_run=dry_run)
        if conflict_policy not in CONFLICT_RESOLUTION:
            raise ValueError(f"Unknown conflict policy: {conflict_policy}")
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self.target_store = target_store
        self.conflict_policy = conflict_policy
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the retry that follows a failed attempt number."""
        return self.backoff_factor * (2 ** (attempt - 1))

    def _write(self, table: str, batch: List[TargetRecord], batch_number: int) -> int:
        """
        Upsert one batch, retrying transient failures.

        Returns:
            Number of attempts made

        Raises:
            BatchWriteError: When the batch cannot be written
        """
        rows = [dict(record.data, id=record.id) for record in batch]
        max_attempts = self.max_retries + 1

        for attempt in range(1, max_attempts + 1):
            try:
                self.target_store.upsert(table, rows, conflict_policy=self.conflict_policy)
                return attempt
            except TargetStoreError as e:
                if not e.retryable:
                    raise BatchWriteError(
                        f"Batch {batch_number} of {table} rejected: {e.message}",
                        batch_number=batch_number,
                        attempts=attempt,
                        phase=table,
                    ) from e
                if attempt == max_attempts:
                    raise BatchWriteError(
                        f"Batch {batch_number} of {table} failed after {attempt} attempts: {e.message}",
                        batch_number=batch_number,
                        attempts=attempt,
                        phase=table,
                    ) from e

                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"Batch {batch_number} of {table} attempt {attempt}/{max_attempts} failed "
                    f"({e.status_code or 'network'}), retrying in {delay:.2f}s"
                )
                self._sleep(delay)

        return max_attempts

    def load_batch(self, table: str, batch: List[TargetRecord], batch_number: int) -> BatchResult:
        result = BatchResult(batch_number=batch_number, size=len(batch))

        if self.dry_run:
            result.succeeded = True
            for record in batch:
                record.status = RecordStatus.LOADED
            logger.info(f"[dry run] Would upsert batch {batch_number} of {table} ({len(batch)} records)")
            return result

        try:
            result.attempts = self._write(table, batch, batch_number)
            result.succeeded = True
            for record in batch:
                record.status = RecordStatus.LOADED
            logger.info(f"Upserted batch {batch_number} of {table} ({len(batch)} records)")
        except BatchWriteError as e:
            result.attempts = e.attempts
            result.error = e.message
            cause = e.__cause__
            if isinstance(cause, TargetStoreError):
                result.status_code = cause.status_code
            for record in batch:
                record.status = RecordStatus.FAILED
            logger.error(e.message)
        except Exception as e:
            # not a store error (e.g. a row the client cannot serialize): fail this batch only
            result.attempts = 1
            result.error = f"Batch {batch_number} of {table} could not be sent: {type(e).__name__}: {e}"
            for record in batch:
                record.status = RecordStatus.FAILED
            logger.exception(result.error)

        return result

    def validate_connection(self) -> bool:
        return self.dry_run or self.target_store.health_check()
