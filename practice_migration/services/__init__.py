"""Services for reconciliation, transformation, validation and reporting."""

from .target_store import TargetStore
from .id_reconciliation import IdMap, IdReconciler
from .transformer import EntityTransformer
from .validator import RecordValidator, ValidationResult
from .progress import ProgressReporter
from .verification import MigrationVerifier, VerificationReport

__all__ = [
    "TargetStore",
    "IdMap",
    "IdReconciler",
    "EntityTransformer",
    "RecordValidator",
    "ValidationResult",
    "ProgressReporter",
    "MigrationVerifier",
    "VerificationReport",
]
