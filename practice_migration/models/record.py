"""Record models for migration data."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime, timezone


class RecordStatus(str, Enum):
    """Status of a record during migration."""
    TRANSFORMED = "transformed"
    VALIDATED = "validated"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    LOADED = "loaded"
    FAILED = "failed"


@dataclass
class ValidationError:
    """A validation problem found on a record."""
    field: str
    message: str
    error_type: str = "validation"
    severity: str = "error"  # error, warning
    value: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "field": self.field,
            "message": self.message,
            "error_type": self.error_type,
            "severity": self.severity,
            "value": self.value,
        }


@dataclass
class LegacyRecord:
    """A row read from the legacy database. Never mutated by the tool."""
    id: int
    table: str
    data: Dict[str, Any]
    extracted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def get(self, key: str, default: Any = None) -> Any:
        """Get a column value, treating SQL NULL as missing."""
        value = self.data.get(key)
        return default if value is None else value


@dataclass
class TargetRecord:
    """A row destined for a target table, keyed by a UUID primary key."""
    id: str
    table: str
    data: Dict[str, Any]
    legacy_id: Optional[Any] = None
    existing: bool = False  # already present in the target store
    status: RecordStatus = RecordStatus.TRANSFORMED
    validation_errors: List[ValidationError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    substituted_fields: List[str] = field(default_factory=list)
    enum_fallbacks: List[str] = field(default_factory=list)
    unresolved_keys: Dict[str, Any] = field(default_factory=dict)  # column -> legacy value
    identity_key: Optional[str] = None  # natural key for in-run duplicate detection (email, name+dob)
    transformed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def error_messages(self) -> List[str]:
        return [f"{e.field}: {e.message}" for e in self.validation_errors if e.severity == "error"]
