"""Exception taxonomy for the migration pipeline."""

from typing import Any, Optional


class MigrationError(Exception):
    """Base class for every error raised by the migration tool."""

    def __init__(
        self,
        message: str,
        phase: Optional[str] = None,
        record_id: Optional[Any] = None,
    ):
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.record_id = record_id

    def to_dict(self) -> dict:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "phase": self.phase,
            "record_id": self.record_id,
        }


class ConfigurationError(MigrationError):
    """Required settings are missing or malformed."""


class LegacyConnectionError(MigrationError):
    """The legacy database could not be reached or a query failed. Fatal for the phase."""


class TargetStoreError(MigrationError):
    """A request to the target store failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
        details: Optional[Any] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.retryable = retryable
        self.details = details

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "status_code": self.status_code,
            "retryable": self.retryable,
            "details": self.details,
        })
        return data


class BatchWriteError(MigrationError):
    """A batch could not be written after all retry attempts."""

    def __init__(self, message: str, batch_number: int, attempts: int, **kwargs):
        super().__init__(message, **kwargs)
        self.batch_number = batch_number
        self.attempts = attempts


class RecordValidationError(MigrationError):
    """A single record failed validation."""


class ReconciliationError(RecordValidationError):
    """A required foreign key did not resolve through an ID map."""
