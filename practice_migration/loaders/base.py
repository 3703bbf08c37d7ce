"""Base loader interface for the target store."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime, timezone
import logging

from ..models.record import TargetRecord

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, int], None]


@dataclass
class BatchResult:
    """Outcome of writing one batch."""
    batch_number: int
    size: int
    succeeded: bool = False
    attempts: int = 0
    error: Optional[str] = None
    status_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_number": self.batch_number,
            "size": self.size,
            "succeeded": self.succeeded,
            "attempts": self.attempts,
            "error": self.error,
            "status_code": self.status_code,
        }


@dataclass
class LoadResult:
    """Result of a load operation."""
    entity: str
    total_attempted: int = 0
    total_succeeded: int = 0
    total_failed: int = 0
    batches: List[BatchResult] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    loaded_ids: List[str] = field(default_factory=list)

    @property
    def retries(self) -> int:
        return sum(max(b.attempts - 1, 0) for b in self.batches)


class BaseLoader(ABC):
    """
    Base class for data loaders.

    Loaders split records into fixed-size batches and write each one.
    A failed batch is recorded and the next batch is still attempted.
    """

    def __init__(self, batch_size: int = 100, dry_run: bool = False):
        """
        Initialize the loader.

        Args:
            batch_size: Number of records per batch
            dry_run: If True, simulate without making changes
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.batch_size = batch_size
        self.dry_run = dry_run

    @abstractmethod
    def load_batch(self, table: str, batch: List[TargetRecord], batch_number: int) -> BatchResult:
        """
        Write one batch.

        Args:
            table: Target table
            batch: Records in this batch
            batch_number: 1-based batch index

        Returns:
            BatchResult describing the outcome
        """
        pass

    def load(
        self,
        table: str,
        records: List[TargetRecord],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> LoadResult:
        """
        Load records in batches.

        Args:
            table: Target table
            records: Validated records to write
            progress_callback: Called as (loaded, total, errors) after each batch

        Returns:
            LoadResult with per-batch detail
        """
        result = LoadResult(entity=table)
        result.started_at = datetime.now(timezone.utc)
        total = len(records)

        logger.info(f"Loading {total} {table} records in batches of {self.batch_size}")

        for number, start in enumerate(range(0, total, self.batch_size), start=1):
            batch = records[start:start + self.batch_size]
            batch_result = self.load_batch(table, batch, number)
            result.batches.append(batch_result)
            result.total_attempted += len(batch)

            if batch_result.succeeded:
                result.total_succeeded += len(batch)
                result.loaded_ids.extend(r.id for r in batch)
            else:
                result.total_failed += len(batch)
                result.errors.append({
                    "batch_number": number,
                    "error": batch_result.error,
                    "status_code": batch_result.status_code,
                    "legacy_ids": [r.legacy_id for r in batch],
                })

            if progress_callback is not None:
                progress_callback(result.total_succeeded, total, result.total_failed)

        result.completed_at = datetime.now(timezone.utc)
        logger.info(
            f"Loaded {table}: {result.total_succeeded}/{result.total_attempted} succeeded, "
            f"{result.total_failed} failed"
        )
        return result

    def validate_connection(self) -> bool:
        """Validate the connection to the target store."""
        return True
