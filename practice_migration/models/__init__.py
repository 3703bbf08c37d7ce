"""Data models for the migration application."""

from .migration import (
    DataQualityReport,
    EntityQuality,
    MigrationRun,
    MigrationStep,
    MigrationStatus,
    MigrationType,
)
from .record import (
    LegacyRecord,
    RecordStatus,
    TargetRecord,
    ValidationError,
)

__all__ = [
    "DataQualityReport",
    "EntityQuality",
    "MigrationRun",
    "MigrationStep",
    "MigrationStatus",
    "MigrationType",
    "LegacyRecord",
    "RecordStatus",
    "TargetRecord",
    "ValidationError",
]
