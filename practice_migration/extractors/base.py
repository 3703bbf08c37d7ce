"""Base extractor interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from datetime import datetime
import logging

from ..models.record import LegacyRecord

logger = logging.getLogger(__name__)


@dataclass
class ExtractionResult:
    """Rows read for one legacy entity."""
    table: str
    records: List[LegacyRecord] = field(default_factory=list)
    total_extracted: int = 0
    warnings: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class BaseExtractor(ABC):
    """
    Base class for legacy data extractors.

    Extractors pull rows from the legacy store and wrap them in
    LegacyRecord objects. They never write. Query failures propagate;
    rows that cannot be wrapped are dropped with a warning.
    """

    def __init__(self):
        self._warnings: List[str] = []

    @abstractmethod
    def extract(self, entity: str, limit: Optional[int] = None) -> ExtractionResult:
        """
        Extract all rows for a named legacy entity.

        Args:
            entity: Extractor entity name (e.g. "users")
            limit: Optional row cap

        Returns:
            ExtractionResult containing the extracted records
        """
        pass

    def create_record(self, table: str, row: Dict[str, Any]) -> Optional[LegacyRecord]:
        """Wrap a raw row in a LegacyRecord. Rows without a primary key are skipped."""
        if row.get("id") is None:
            self.add_warning(f"{table} row without id skipped")
            return None
        return LegacyRecord(id=row["id"], table=table, data=dict(row))

    def add_warning(self, message: str) -> None:
        self._warnings.append(message)
        logger.warning(f"Extraction warning: {message}")

    def get_extraction_result(self, table: str, records: List[LegacyRecord]) -> ExtractionResult:
        return ExtractionResult(
            table=table,
            records=records,
            total_extracted=len(records),
            warnings=self._warnings.copy(),
        )

    def reset(self) -> None:
        self._warnings = []
