"""Pre-write validation shared by every entity."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from ..errors import ReconciliationError, RecordValidationError
from ..models.record import RecordStatus, TargetRecord, ValidationError
from ..utils import is_valid_uuid

logger = logging.getLogger(__name__)


@dataclass
class EntityRules:
    """What a record of one table must carry before it is written."""
    required_foreign_keys: List[str] = field(default_factory=list)
    optional_foreign_keys: List[str] = field(default_factory=list)
    required_fields: List[str] = field(default_factory=list)


ENTITY_RULES: Dict[str, EntityRules] = {
    "practices": EntityRules(required_fields=["legacy_id", "name"]),
    "profiles": EntityRules(required_fields=["legacy_user_id", "email", "profile_type"]),
    "practice_members": EntityRules(
        required_foreign_keys=["practice_id", "profile_id"],
        required_fields=["role"],
    ),
    "patients": EntityRules(
        required_foreign_keys=["practice_id"],
        optional_foreign_keys=["profile_id"],
        required_fields=["legacy_patient_id", "first_name", "last_name", "patient_number"],
    ),
    "cases": EntityRules(
        required_foreign_keys=["patient_id", "practice_id"],
        required_fields=["legacy_project_id", "case_number", "title"],
    ),
    "projects": EntityRules(
        required_foreign_keys=["case_id", "practice_id"],
        optional_foreign_keys=["creator_id"],
        required_fields=["legacy_id", "project_number", "name", "storage_bucket"],
    ),
    "case_messages": EntityRules(
        required_foreign_keys=["case_id", "sender_id"],
        optional_foreign_keys=["recipient_id"],
        required_fields=["legacy_record_id"],
    ),
    "case_state_history": EntityRules(
        required_foreign_keys=["case_id"],
        optional_foreign_keys=["changed_by_id"],
        required_fields=["legacy_state_id", "to_state"],
    ),
}


@dataclass
class ValidationResult:
    """Records split into those safe to write and those withheld."""
    valid: List[TargetRecord] = field(default_factory=list)
    rejected: List[TargetRecord] = field(default_factory=list)
    nulled_optional_keys: int = 0

    @property
    def rejected_count(self) -> int:
        return len(self.rejected)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": len(self.valid),
            "rejected": self.rejected_count,
            "nulled_optional_keys": self.nulled_optional_keys,
            "rejections": [
                {"legacy_id": r.legacy_id, "errors": r.error_messages} for r in self.rejected
            ],
        }


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class RecordValidator:
    """
    Applies one reject-and-log policy before every batch write.

    - A required foreign key that is missing, unresolved or not a UUID
      rejects the record.
    - An optional foreign key that did not resolve is set to None.
    - An empty required column rejects the record.
    - The primary key must be a valid UUID.
    """

    def validate_record(
        self,
        record: TargetRecord,
        required_foreign_keys: Sequence[str] = (),
        optional_foreign_keys: Sequence[str] = (),
        required_fields: Sequence[str] = (),
    ) -> List[ValidationError]:
        """
        Validate one record, nulling unresolved optional keys in place.

        Returns:
            List of validation errors (empty when the record may be written)
        """
        errors: List[ValidationError] = []

        if not is_valid_uuid(record.data.get("id", record.id)):
            errors.append(ValidationError(
                field="id",
                message="Primary key is not a valid UUID",
                error_type="uuid",
                value=record.data.get("id", record.id),
            ))

        for column in required_foreign_keys:
            value = record.data.get(column)
            if value is None:
                legacy_value = record.unresolved_keys.get(column)
                message = (
                    f"Unresolved foreign key (legacy {legacy_value})"
                    if legacy_value is not None
                    else "Required foreign key is missing"
                )
                errors.append(ValidationError(
                    field=column,
                    message=message,
                    error_type="foreign_key",
                    value=legacy_value,
                ))
            elif not is_valid_uuid(value):
                errors.append(ValidationError(
                    field=column,
                    message="Foreign key is not a valid UUID",
                    error_type="uuid",
                    value=value,
                ))

        for column in optional_foreign_keys:
            value = record.data.get(column)
            if value is not None and not is_valid_uuid(value):
                errors.append(ValidationError(
                    field=column,
                    message="Foreign key is not a valid UUID",
                    error_type="uuid",
                    value=value,
                ))
            elif value is None:
                record.data[column] = None
                if column in record.unresolved_keys:
                    record.warnings.append(
                        f"{column}: legacy {record.unresolved_keys[column]} not migrated, set to null"
                    )

        for column in required_fields:
            if _is_empty(record.data.get(column)):
                errors.append(ValidationError(
                    field=column,
                    message="Required field is missing",
                    error_type="required",
                ))

        return errors

    def check(
        self,
        record: TargetRecord,
        required_foreign_keys: Sequence[str] = (),
        optional_foreign_keys: Sequence[str] = (),
        required_fields: Sequence[str] = (),
    ) -> None:
        """
        Raise when the record must not be written.

        Raises:
            ReconciliationError: A required foreign key did not resolve
            RecordValidationError: Any other validation failure
        """
        errors = self.validate_record(
            record,
            required_foreign_keys=required_foreign_keys,
            optional_foreign_keys=optional_foreign_keys,
            required_fields=required_fields,
        )
        if not errors:
            return

        record.validation_errors.extend(errors)
        error_cls = (
            ReconciliationError
            if any(e.error_type == "foreign_key" for e in errors)
            else RecordValidationError
        )
        raise error_cls(
            f"Rejected {record.table} legacy id {record.legacy_id}: "
            f"{'; '.join(record.error_messages)}",
            phase=record.table,
            record_id=record.legacy_id,
        )

    def partition(
        self,
        records: List[TargetRecord],
        required_foreign_keys: Sequence[str] = (),
        optional_foreign_keys: Sequence[str] = (),
        required_fields: Sequence[str] = (),
    ) -> ValidationResult:
        """
        Split records into writable and rejected.

        Rejected records are logged with their legacy id and never sent.
        """
        result = ValidationResult()

        for record in records:
            nulled_before = sum(
                1 for c in optional_foreign_keys if c in record.unresolved_keys
            )
            try:
                self.check(
                    record,
                    required_foreign_keys=required_foreign_keys,
                    optional_foreign_keys=optional_foreign_keys,
                    required_fields=required_fields,
                )
            except RecordValidationError as e:
                record.status = RecordStatus.REJECTED
                result.rejected.append(record)
                logger.warning(e.message)
                continue

            record.status = RecordStatus.VALIDATED
            result.valid.append(record)
            result.nulled_optional_keys += nulled_before

        if result.rejected:
            logger.warning(
                f"{len(result.rejected)} of {len(records)} records rejected before write"
            )
        return result

    def partition_entity(self, entity: str, records: List[TargetRecord]) -> ValidationResult:
        """partition() with the rules registered for a target table."""
        rules = ENTITY_RULES.get(entity)
        if rules is None:
            raise ValueError(f"No validation rules for entity: {entity}")
        return self.partition(
            records,
            required_foreign_keys=rules.required_foreign_keys,
            optional_foreign_keys=rules.optional_foreign_keys,
            required_fields=rules.required_fields,
        )
