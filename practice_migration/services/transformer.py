"""Per-entity transformation from legacy rows to target rows."""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .id_reconciliation import IdMap
from ..models.record import LegacyRecord, TargetRecord
from ..utils import (
    clean_str,
    is_valid_uuid,
    legacy_key,
    member_key,
    new_uuid,
    normalize_code,
    normalize_email,
    patient_key,
    to_iso_date,
    to_iso_timestamp,
)

logger = logging.getLogger(__name__)


# Enum remapping tables. Keys are normalized codes (see normalize_code).

GENDER_MAP = {
    "m": "male",
    "male": "male",
    "f": "female",
    "female": "female",
    "o": "other",
    "other": "other",
}
GENDER_FALLBACK = "prefer_not_to_say"

PROJECT_TYPE_MAP = {
    1: "scan",
    2: "model",
    3: "impression",
    4: "xray",
    5: "photo",
    6: "treatment_plan",
    7: "aligner_design",
    8: "simulation",
    9: "document",
}
PROJECT_TYPE_MAP.update({name: name for name in list(PROJECT_TYPE_MAP.values())})
PROJECT_TYPE_FALLBACK = "other"

PROJECT_STATUS_MAP = {
    0: "draft",
    1: "in_progress",
    2: "review",
    3: "approved",
    4: "archived",
    5: "deleted",
}
PROJECT_STATUS_MAP.update({name: name for name in list(PROJECT_STATUS_MAP.values())})
PROJECT_STATUS_FALLBACK = "draft"

CASE_TYPE_MAP = {
    # integer legacy project types
    1: "diagnostic",
    2: "orthodontic",
    3: "restorative",
    4: "diagnostic",
    5: "diagnostic",
    6: "orthodontic",
    7: "orthodontic",
    8: "orthodontic",
    # legacy strings
    "orthodontic": "orthodontic",
    "aligner": "orthodontic",
    "implant": "implant",
    "crown": "restorative",
    "bridge": "restorative",
    "restorative": "restorative",
    "cleaning": "preventive",
    "preventive": "preventive",
    "extraction": "surgical",
    "surgical": "surgical",
    "root_canal": "endodontic",
    "endodontic": "endodontic",
    "diagnostic": "diagnostic",
}
CASE_TYPE_FALLBACK = "general"

CASE_STATE_MAP = {
    # integer legacy project statuses
    0: "new",
    1: "in_progress",
    2: "pending_review",
    3: "completed",
    4: "completed",
    5: "cancelled",
    "new": "new",
    "draft": "new",
    "in_progress": "in_progress",
    "pending": "pending_review",
    "pending_review": "pending_review",
    "review": "pending_review",
    "approved": "completed",
    "completed": "completed",
    "archived": "completed",
    "on_hold": "on_hold",
    "cancelled": "cancelled",
    "deleted": "cancelled",
}
CASE_STATE_FALLBACK = "new"

MESSAGE_TYPE_MAP = {
    1: "status_update",
    2: "question",
    3: "instruction",
    4: "notification",
    5: "response",
    "status_update": "status_update",
    "question": "question",
    "instruction": "instruction",
    "notification": "notification",
    "response": "response",
}
MESSAGE_TYPE_FALLBACK = "general"

# dispatch_state.state codes
STATE_CHANGE_MAP = {
    1: "new",
    2: "in_progress",
    3: "in_progress",
    4: "completed",
    5: "cancelled",
}
STATE_CHANGE_MAP.update({k: v for k, v in CASE_STATE_MAP.items() if isinstance(k, str)})
STATE_CHANGE_FALLBACK = "new"

DEFAULT_COUNTRY = "US"
DEFAULT_STORAGE_BUCKET = "projects"


def remap_enum(value: Any, table: Dict[Any, str], fallback: str) -> Tuple[str, bool]:
    """
    Map a legacy code through an enum table.

    Returns:
        (target value, True when the fallback was used for a non-empty code)
    """
    code = normalize_code(value)
    if code is None:
        return fallback, False
    mapped = table.get(code)
    if mapped is None:
        return fallback, True
    return mapped, False


def profile_type_for(row: LegacyRecord) -> str:
    """superuser -> master, staff -> technician, patient -> patient, else client."""
    if row.get("is_superuser"):
        return "master"
    if row.get("is_staff"):
        return "technician"
    if row.get("has_patient"):
        return "patient"
    return "client"


def _to_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "t", "yes", "y")
    return bool(value)


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _first_email(value: Any) -> Optional[str]:
    """The legacy office stores emails as a list or a delimited string."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        candidates = value
    else:
        candidates = str(value).replace(";", ",").replace(" ", ",").split(",")
    for candidate in candidates:
        email = normalize_email(candidate)
        if email:
            return email
    return None


class EntityTransformer:
    """
    Converts legacy rows into TargetRecords, one method per entity.

    Each transform takes the legacy row and a context of IdMaps and returns
    a TargetRecord. Nothing here touches a database; unresolved foreign
    keys are left as None and noted on the record for the validator.

    Context keys used:
        practices, profiles, profiles_by_email, practice_members, patients,
        patients_by_identity, doctor_practices, cases, projects, case_messages,
        case_state_history
    """

    def __init__(self, migrated_at: Optional[datetime] = None):
        self.migrated_at = migrated_at or datetime.now(timezone.utc)
        self._transforms: Dict[str, Callable[[LegacyRecord, Dict[str, IdMap]], TargetRecord]] = {
            "practices": self.transform_practice,
            "profiles": self.transform_profile,
            "practice_members": self.transform_practice_member,
            "patients": self.transform_patient,
            "cases": self.transform_case,
            "projects": self.transform_project,
            "case_messages": self.transform_case_message,
            "case_state_history": self.transform_case_state,
        }

    def transform(self, entity: str, row: LegacyRecord, context: Optional[Dict[str, IdMap]] = None) -> TargetRecord:
        func = self._transforms.get(entity)
        if func is None:
            raise ValueError(f"No transformer for entity: {entity}")
        record = func(row, context or {})
        self._check_uuid_fields(record)
        return record

    def transform_many(
        self,
        entity: str,
        rows: List[LegacyRecord],
        context: Optional[Dict[str, IdMap]] = None,
    ) -> List[TargetRecord]:
        return [self.transform(entity, row, context) for row in rows]

    # helpers

    @staticmethod
    def _map(context: Dict[str, IdMap], name: str) -> IdMap:
        return context.get(name) or IdMap(name)

    def _timestamp(self, value: Any) -> str:
        return to_iso_timestamp(value, default=self.migrated_at)

    def _new_record(self, table: str, row: LegacyRecord, existing_id: Optional[str]) -> TargetRecord:
        """Reuse the already-migrated UUID when reconciliation found one."""
        if existing_id:
            return TargetRecord(id=existing_id, table=table, data={}, legacy_id=row.id, existing=True)
        return TargetRecord(id=new_uuid(), table=table, data={}, legacy_id=row.id)

    @staticmethod
    def _resolve(record: TargetRecord, column: str, id_map: IdMap, legacy_value: Any) -> None:
        target_id = id_map.get(legacy_value)
        record.data[column] = target_id
        if target_id is None and legacy_value is not None:
            record.unresolved_keys[column] = legacy_value

    @staticmethod
    def _enum(record: TargetRecord, column: str, value: Any, table: Dict[Any, str], fallback: str) -> None:
        mapped, used_fallback = remap_enum(value, table, fallback)
        record.data[column] = mapped
        if used_fallback:
            record.enum_fallbacks.append(f"{column}={value!r}")

    def _check_uuid_fields(self, record: TargetRecord) -> None:
        """Regenerate an invalid primary key. Invalid foreign keys are left for the validator."""
        if not is_valid_uuid(record.id):
            replacement = new_uuid()
            logger.warning(
                f"{record.table} legacy id {record.legacy_id}: invalid UUID {record.id!r} "
                f"replaced with {replacement}"
            )
            record.substituted_fields.append("id")
            record.warnings.append(f"id {record.id!r} was not a valid UUID")
            record.id = replacement
            record.existing = False
        record.data["id"] = record.id

    def _practice_for(self, context: Dict[str, IdMap], *doctor_ids: Any) -> Tuple[Optional[str], Any]:
        doctor_practices = self._map(context, "doctor_practices")
        for doctor_id in doctor_ids:
            practice_id = doctor_practices.get(doctor_id)
            if practice_id:
                return practice_id, doctor_id
        first_known = next((d for d in doctor_ids if d is not None), None)
        return None, first_known

    def _resolve_case(self, record: TargetRecord, row: LegacyRecord, context: Dict[str, IdMap]) -> None:
        """Rows hang off a generic (content type, object id) relation; only projects have a case."""
        content_model = clean_str(row.get("content_model"))
        if content_model == "project":
            self._resolve(record, "case_id", self._map(context, "cases"), legacy_key(row.get("object_id")))
        else:
            record.data["case_id"] = None
            record.unresolved_keys["case_id"] = f"{content_model}:{row.get('object_id')}"

    # entities

    def transform_practice(self, row: LegacyRecord, context: Dict[str, IdMap]) -> TargetRecord:
        record = self._new_record("practices", row, self._map(context, "practices").get(row.id))
        record.data.update({
            "legacy_id": row.id,
            "name": clean_str(row.get("name")) or "Unknown Practice",
            "address": {
                "street": clean_str(row.get("address")),
                "apt": clean_str(row.get("apt")),
                "city": clean_str(row.get("city")),
                "state": clean_str(row.get("state")),
                "zip": clean_str(row.get("zip")),
                "country": DEFAULT_COUNTRY,
            },
            "phone": clean_str(row.get("phone")),
            "email": _first_email(row.get("emails")),
            "settings": {},
            "is_active": _to_bool(row.get("valid"), default=True),
            "metadata": {
                "source_table": "dispatch_office",
                "square_customer_id": clean_str(row.get("sq_customer_id")),
                "legacy_emails": row.get("emails"),
            },
            "created_at": self._timestamp(row.get("created_at")),
            "updated_at": self._timestamp(row.get("updated_at")),
        })
        return record

    def transform_profile(self, row: LegacyRecord, context: Dict[str, IdMap]) -> TargetRecord:
        email = normalize_email(row.get("email"))
        existing_id = (
            self._map(context, "profiles").get(row.id)
            or (email and self._map(context, "profiles_by_email").get(email))
            or None
        )
        record = self._new_record("profiles", row, existing_id)
        record.identity_key = email

        if email is None:
            email = f"legacy-user-{row.id}@migration.invalid"
            record.warnings.append("missing or invalid email replaced with a placeholder")

        username = clean_str(row.get("username"))
        record.data.update({
            "legacy_user_id": row.id,
            "email": email,
            "first_name": clean_str(row.get("first_name")) or username or "Unknown",
            "last_name": clean_str(row.get("last_name")) or "User",
            "profile_type": profile_type_for(row),
            "is_active": _to_bool(row.get("is_active"), default=True),
            "metadata": {
                "source_table": "auth_user",
                "username": username,
                "is_staff": _to_bool(row.get("is_staff")),
                "is_superuser": _to_bool(row.get("is_superuser")),
                "last_login": to_iso_timestamp(row.get("last_login")),
            },
            "created_at": self._timestamp(row.get("date_joined")),
            "updated_at": self._timestamp(row.get("last_login") or row.get("date_joined")),
        })
        return record

    def transform_practice_member(self, row: LegacyRecord, context: Dict[str, IdMap]) -> TargetRecord:
        practice_id = self._map(context, "practices").get(row.get("office_id"))
        profile_id = self._map(context, "profiles").get(row.get("user_id"))
        existing_id = None
        if practice_id and profile_id:
            existing_id = self._map(context, "practice_members").get(member_key(practice_id, profile_id))

        record = self._new_record("practice_members", row, existing_id)
        self._resolve(record, "practice_id", self._map(context, "practices"), row.get("office_id"))
        self._resolve(record, "profile_id", self._map(context, "profiles"), row.get("user_id"))

        primary_practice = self._map(context, "doctor_practices").get(row.get("user_id"))
        record.data.update({
            "role": "doctor",
            "is_primary": practice_id is not None and primary_practice == practice_id,
            "is_active": True,
            "created_at": self._timestamp(None),
        })
        return record

    def transform_patient(self, row: LegacyRecord, context: Dict[str, IdMap]) -> TargetRecord:
        first_name = clean_str(row.get("first_name")) or "Unknown"
        last_name = clean_str(row.get("last_name")) or "Patient"
        date_of_birth = to_iso_date(row.get("birthdate"))

        key = patient_key(row.get("first_name"), row.get("last_name"), row.get("birthdate"))
        existing_id = self._map(context, "patients").get(row.id)
        if existing_id is None and key:
            existing_id = self._map(context, "patients_by_identity").get(key)
        record = self._new_record("patients", row, existing_id)
        record.identity_key = key

        practice_id, doctor_id = self._practice_for(context, row.get("doctor_id"))
        record.data["practice_id"] = practice_id
        if practice_id is None and doctor_id is not None:
            record.unresolved_keys["practice_id"] = doctor_id
        self._resolve(record, "profile_id", self._map(context, "profiles"), row.get("user_id"))
        self._enum(record, "gender", row.get("sex"), GENDER_MAP, GENDER_FALLBACK)

        record.data.update({
            "legacy_patient_id": row.id,
            "patient_number": f"P{_to_int(row.id):06d}",
            "first_name": first_name,
            "last_name": last_name,
            "date_of_birth": date_of_birth,
            "email": normalize_email(row.get("email")),
            "is_archived": _to_bool(row.get("archived")),
            "metadata": {
                "source_table": "dispatch_patient",
                "legacy_user_id": row.get("user_id"),
                "legacy_doctor_id": row.get("doctor_id"),
                "legacy_status": row.get("status"),
            },
            "created_at": self._timestamp(row.get("created_at")),
            "updated_at": self._timestamp(row.get("updated_at")),
        })
        return record

    def transform_case(self, row: LegacyRecord, context: Dict[str, IdMap]) -> TargetRecord:
        record = self._new_record("cases", row, self._map(context, "cases").get(row.id))
        case_number = f"CASE-{_to_int(row.id):06d}"

        self._resolve(record, "patient_id", self._map(context, "patients"), row.get("patient_id"))
        practice_id, doctor_id = self._practice_for(
            context, row.get("creator_id"), row.get("patient_doctor_id")
        )
        record.data["practice_id"] = practice_id
        if practice_id is None and doctor_id is not None:
            record.unresolved_keys["practice_id"] = doctor_id

        self._enum(record, "case_type", row.get("type"), CASE_TYPE_MAP, CASE_TYPE_FALLBACK)
        self._enum(record, "current_state", row.get("status"), CASE_STATE_MAP, CASE_STATE_FALLBACK)

        record.data.update({
            "legacy_project_id": row.id,
            "case_number": case_number,
            "title": clean_str(row.get("name")) or f"Case {case_number}",
            "description": clean_str(row.get("description")),
            "metadata": {
                "source_table": "dispatch_project",
                "legacy_uid": clean_str(row.get("uid")),
                "legacy_type": row.get("type"),
                "legacy_status": row.get("status"),
                "legacy_creator_id": row.get("creator_id"),
            },
            "created_at": self._timestamp(row.get("created_at")),
            "updated_at": self._timestamp(row.get("updated_at")),
        })
        return record

    def transform_project(self, row: LegacyRecord, context: Dict[str, IdMap]) -> TargetRecord:
        existing_id = self._map(context, "projects").get(row.id)
        legacy_uid = clean_str(row.get("uid"))
        record = self._new_record("projects", row, existing_id)
        if existing_id is None and legacy_uid is not None:
            # Keep the legacy uid as primary key; _check_uuid_fields replaces it if malformed
            record.id = legacy_uid.lower() if is_valid_uuid(legacy_uid) else legacy_uid

        self._resolve(record, "case_id", self._map(context, "cases"), row.id)
        practice_id, doctor_id = self._practice_for(
            context, row.get("creator_id"), row.get("patient_doctor_id")
        )
        record.data["practice_id"] = practice_id
        if practice_id is None and doctor_id is not None:
            record.unresolved_keys["practice_id"] = doctor_id
        self._resolve(record, "creator_id", self._map(context, "profiles"), row.get("creator_id"))

        self._enum(record, "project_type", row.get("type"), PROJECT_TYPE_MAP, PROJECT_TYPE_FALLBACK)
        self._enum(record, "status", row.get("status"), PROJECT_STATUS_MAP, PROJECT_STATUS_FALLBACK)

        created_at = self._timestamp(row.get("created_at"))
        record.data.update({
            "legacy_id": row.id,
            "legacy_uid": legacy_uid,
            "project_number": f"PRJ-{created_at[:4]}{created_at[5:7]}-{_to_int(row.id):06d}",
            "name": clean_str(row.get("name")) or f"Project {row.id}",
            "file_size": max(_to_int(row.get("file_size")), 0),
            "storage_bucket": DEFAULT_STORAGE_BUCKET,
            "mime_type": clean_str(row.get("mime_type")),
            "is_public": _to_bool(row.get("public")),
            "metadata": {
                "source_table": "dispatch_project",
                "legacy_type": row.get("type"),
                "legacy_status": row.get("status"),
                "description": clean_str(row.get("description")),
            },
            "created_at": created_at,
            "updated_at": self._timestamp(row.get("updated_at")),
        })
        return record

    def transform_case_message(self, row: LegacyRecord, context: Dict[str, IdMap]) -> TargetRecord:
        record = self._new_record("case_messages", row, self._map(context, "case_messages").get(row.id))

        self._resolve_case(record, row, context)
        self._resolve(record, "sender_id", self._map(context, "profiles"), row.get("sender_id"))
        self._resolve(record, "recipient_id", self._map(context, "profiles"), row.get("recipient_id"))
        self._enum(record, "message_type", row.get("message_type"), MESSAGE_TYPE_MAP, MESSAGE_TYPE_FALLBACK)

        record.data.update({
            "legacy_record_id": row.id,
            "subject": clean_str(row.get("subject")),
            "body": clean_str(row.get("body")) or "",
            "is_read": _to_bool(row.get("is_read")),
            "metadata": {
                "source_table": "dispatch_record",
                "content_type": f"{row.get('content_app_label')}.{row.get('content_model')}",
                "legacy_object_id": row.get("object_id"),
            },
            "created_at": self._timestamp(row.get("created_at")),
            "updated_at": self._timestamp(row.get("updated_at")),
        })
        return record

    def transform_case_state(self, row: LegacyRecord, context: Dict[str, IdMap]) -> TargetRecord:
        record = self._new_record(
            "case_state_history", row, self._map(context, "case_state_history").get(row.id)
        )
        self._resolve_case(record, row, context)
        self._resolve(record, "changed_by_id", self._map(context, "profiles"), row.get("changed_by_id"))

        self._enum(record, "to_state", row.get("state"), STATE_CHANGE_MAP, STATE_CHANGE_FALLBACK)
        if normalize_code(row.get("previous_state")) is None:
            record.data["from_state"] = None
        else:
            self._enum(record, "from_state", row.get("previous_state"), STATE_CHANGE_MAP, STATE_CHANGE_FALLBACK)

        record.data.update({
            "legacy_state_id": row.id,
            "reason": clean_str(row.get("reason")),
            "metadata": {
                "source_table": "dispatch_state",
                "content_type": f"{row.get('content_app_label')}.{row.get('content_model')}",
                "legacy_object_id": row.get("object_id"),
                "legacy_state": row.get("state"),
                "legacy_previous_state": row.get("previous_state"),
            },
            "created_at": self._timestamp(row.get("created_at")),
        })
        return record
