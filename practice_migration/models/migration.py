"""Migration execution models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime, timezone
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MigrationStatus(str, Enum):
    """Status of a migration run or of one entity step.

    A run moves not_started -> running -> completed | failed. There is no
    paused state; re-running relies on reconciliation and upserts.
    """
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # step disabled from the command line


class MigrationType(str, Enum):
    """Value stored in migration_runs.type."""
    FULL = "full"


@dataclass
class EntityQuality:
    """Data-quality counters for one entity type."""
    substituted_ids: int = 0
    rejected: int = 0
    enum_fallbacks: int = 0
    nulled_optional_keys: int = 0
    samples: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "substituted_ids": self.substituted_ids,
            "rejected": self.rejected,
            "enum_fallbacks": self.enum_fallbacks,
            "nulled_optional_keys": self.nulled_optional_keys,
            "samples": self.samples,
        }


@dataclass
class DataQualityReport:
    """
    Structured report of every place the migration traded fidelity for a
    successful write, so operators can judge how far to trust a run.
    """
    entities: Dict[str, EntityQuality] = field(default_factory=dict)
    max_samples: int = 20

    def _entity(self, entity: str) -> EntityQuality:
        if entity not in self.entities:
            self.entities[entity] = EntityQuality()
        return self.entities[entity]

    def _sample(self, quality: EntityQuality, message: Optional[str]) -> None:
        if message and len(quality.samples) < self.max_samples:
            quality.samples.append(message)

    def record_substitution(self, entity: str, message: Optional[str] = None) -> None:
        quality = self._entity(entity)
        quality.substituted_ids += 1
        self._sample(quality, message)

    def record_rejection(self, entity: str, message: Optional[str] = None) -> None:
        quality = self._entity(entity)
        quality.rejected += 1
        self._sample(quality, message)

    def record_enum_fallback(self, entity: str, message: Optional[str] = None) -> None:
        quality = self._entity(entity)
        quality.enum_fallbacks += 1
        self._sample(quality, message)

    def record_nulled_key(self, entity: str, message: Optional[str] = None) -> None:
        quality = self._entity(entity)
        quality.nulled_optional_keys += 1
        self._sample(quality, message)

    @property
    def total_substituted(self) -> int:
        return sum(q.substituted_ids for q in self.entities.values())

    @property
    def total_rejected(self) -> int:
        return sum(q.rejected for q in self.entities.values())

    @property
    def is_clean(self) -> bool:
        return all(
            q.substituted_ids == 0 and q.rejected == 0 and q.enum_fallbacks == 0
            for q in self.entities.values()
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entities": {name: q.to_dict() for name, q in self.entities.items()},
            "total_substituted": self.total_substituted,
            "total_rejected": self.total_rejected,
            "is_clean": self.is_clean,
        }


@dataclass
class MigrationStep:
    """The migration of one entity type (one phase)."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    table: str = ""
    status: MigrationStatus = MigrationStatus.NOT_STARTED
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    records_total: int = 0
    records_attempted: int = 0
    records_succeeded: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    records_rejected: int = 0
    retries: int = 0
    batches: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "table": self.table,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "records_total": self.records_total,
            "records_attempted": self.records_attempted,
            "records_succeeded": self.records_succeeded,
            "records_failed": self.records_failed,
            "records_skipped": self.records_skipped,
            "records_rejected": self.records_rejected,
            "retries": self.retries,
            "batches": self.batches,
            "errors": self.errors,
            "warnings": self.warnings,
        }

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


@dataclass
class MigrationRun:
    """A complete migration run."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    type: MigrationType = MigrationType.FULL
    status: MigrationStatus = MigrationStatus.NOT_STARTED
    dry_run: bool = False

    # Timing
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Progress
    steps: List[MigrationStep] = field(default_factory=list)
    current_step: Optional[str] = None

    # Statistics
    total_records_attempted: int = 0
    total_records_succeeded: int = 0
    total_records_failed: int = 0
    total_records_skipped: int = 0
    total_records_rejected: int = 0

    errors: List[Dict[str, Any]] = field(default_factory=list)
    data_quality: DataQualityReport = field(default_factory=DataQualityReport)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "dry_run": self.dry_run,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "steps": [s.to_dict() for s in self.steps],
            "current_step": self.current_step,
            "total_records_attempted": self.total_records_attempted,
            "total_records_succeeded": self.total_records_succeeded,
            "total_records_failed": self.total_records_failed,
            "total_records_skipped": self.total_records_skipped,
            "total_records_rejected": self.total_records_rejected,
            "errors": self.errors,
            "data_quality": self.data_quality.to_dict(),
            "metadata": self.metadata,
        }

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def start(self) -> None:
        if self.status != MigrationStatus.NOT_STARTED:
            raise ValueError(f"Cannot start a run in status: {self.status.value}")
        self.status = MigrationStatus.RUNNING
        self.started_at = utcnow()

    def finish(self, status: MigrationStatus) -> None:
        if self.status != MigrationStatus.RUNNING:
            raise ValueError(f"Cannot finish a run in status: {self.status.value}")
        if status not in (MigrationStatus.COMPLETED, MigrationStatus.FAILED):
            raise ValueError(f"Invalid terminal status: {status.value}")
        self.status = status
        self.completed_at = utcnow()
        self.current_step = None
        self.update_totals()

    def add_step(self, name: str, table: str) -> MigrationStep:
        """Add a new step to the migration."""
        step = MigrationStep(name=name, table=table)
        self.steps.append(step)
        return step

    def get_step(self, name: str) -> Optional[MigrationStep]:
        """Get a step by name."""
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def update_totals(self) -> None:
        """Update total statistics from steps."""
        self.total_records_attempted = sum(s.records_attempted for s in self.steps)
        self.total_records_succeeded = sum(s.records_succeeded for s in self.steps)
        self.total_records_failed = sum(s.records_failed for s in self.steps)
        self.total_records_skipped = sum(s.records_skipped for s in self.steps)
        self.total_records_rejected = sum(s.records_rejected for s in self.steps)
