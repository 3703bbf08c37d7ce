from datetime import datetime, timezone

import pytest

from practice_migration.models.record import LegacyRecord
from practice_migration.services.id_reconciliation import IdMap
from practice_migration.services.transformer import (
    CASE_STATE_FALLBACK,
    CASE_STATE_MAP,
    CASE_TYPE_FALLBACK,
    EntityTransformer,
    GENDER_FALLBACK,
    GENDER_MAP,
    MESSAGE_TYPE_FALLBACK,
    PROJECT_STATUS_FALLBACK,
    PROJECT_STATUS_MAP,
    PROJECT_TYPE_FALLBACK,
    STATE_CHANGE_FALLBACK,
    STATE_CHANGE_MAP,
    remap_enum,
    CASE_TYPE_MAP,
    MESSAGE_TYPE_MAP,
    PROJECT_TYPE_MAP,
)
from practice_migration.utils import is_valid_uuid

from conftest import CASE_ID, DOCTOR_PROFILE_ID, PATIENT_ID, PRACTICE_ID

MIGRATED_AT = datetime(2024, 1, 1, tzinfo=timezone.utc)


def row(table, **data):
    return LegacyRecord(id=data.get("id"), table=table, data=data)


def transformer():
    return EntityTransformer(migrated_at=MIGRATED_AT)


def test_remap_enum_accepts_ints_and_digit_strings():
    assert remap_enum(2, CASE_TYPE_MAP, "general") == ("orthodontic", False)
    assert remap_enum("2", CASE_TYPE_MAP, "general") == ("orthodontic", False)
    assert remap_enum(" Crown ", CASE_TYPE_MAP, "general") == ("restorative", False)


def test_remap_enum_fallback_is_flagged_only_for_unknown_codes():
    assert remap_enum(42, MESSAGE_TYPE_MAP, "general") == ("general", True)
    assert remap_enum(None, MESSAGE_TYPE_MAP, "general") == ("general", False)
    assert remap_enum("", PROJECT_TYPE_MAP, "other") == ("other", False)


def test_practice_takes_first_valid_email_and_default_country():
    record = transformer().transform("practices", row(
        "dispatch_office", id=3, name="  Smile Co ", emails="not-an-email; Desk@Smile.example",
        city="Reno", valid=None,
    ))

    assert is_valid_uuid(record.id)
    assert record.data["id"] == record.id
    assert record.data["legacy_id"] == 3
    assert record.data["name"] == "Smile Co"
    assert record.data["email"] == "desk@smile.example"
    assert record.data["address"]["country"] == "US"
    assert record.data["is_active"] is True
    assert record.data["created_at"] == MIGRATED_AT.isoformat()
    assert not record.existing


def test_practice_reuses_reconciled_id():
    context = {"practices": IdMap("practices", {3: PRACTICE_ID})}
    record = transformer().transform("practices", row("dispatch_office", id=3, name="Smile Co"), context)

    assert record.id == PRACTICE_ID
    assert record.existing


def test_profile_type_and_email_normalization():
    t = transformer()
    staff = t.transform("profiles", row("auth_user", id=1, email=" Tech@Lab.Example ", is_staff=True))
    boss = t.transform("profiles", row("auth_user", id=2, email="a@b.example", is_staff=True, is_superuser=True))
    patient = t.transform("profiles", row("auth_user", id=3, email="p@b.example", has_patient=True))
    client = t.transform("profiles", row("auth_user", id=4, email="c@b.example"))

    assert staff.data["email"] == "tech@lab.example"
    assert staff.data["profile_type"] == "technician"
    assert boss.data["profile_type"] == "master"
    assert patient.data["profile_type"] == "patient"
    assert client.data["profile_type"] == "client"


def test_profile_without_email_gets_placeholder():
    record = transformer().transform("profiles", row("auth_user", id=77, email="nope", username="ghost"))

    assert record.data["email"] == "legacy-user-77@migration.invalid"
    assert record.data["first_name"] == "ghost"
    assert record.warnings


def test_profile_matched_by_email_is_existing():
    context = {
        "profiles": IdMap("profiles"),
        "profiles_by_email": IdMap("profiles_by_email", {"ann@downtown.example": DOCTOR_PROFILE_ID}),
    }
    record = transformer().transform(
        "profiles", row("auth_user", id=10, email="ANN@downtown.example"), context
    )

    assert record.id == DOCTOR_PROFILE_ID
    assert record.existing


def test_practice_member_is_primary_for_first_linked_practice():
    context = {
        "practices": IdMap("practices", {1: PRACTICE_ID}),
        "profiles": IdMap("profiles", {10: DOCTOR_PROFILE_ID}),
        "doctor_practices": IdMap("doctor_practices", {10: PRACTICE_ID}),
    }
    record = transformer().transform(
        "practice_members", row("dispatch_office_doctors", id=1, office_id=1, user_id=10), context
    )

    assert record.data["practice_id"] == PRACTICE_ID
    assert record.data["profile_id"] == DOCTOR_PROFILE_ID
    assert record.data["role"] == "doctor"
    assert record.data["is_primary"] is True


def test_patient_resolves_practice_through_doctor():
    context = {
        "doctor_practices": IdMap("doctor_practices", {10: PRACTICE_ID}),
        "profiles": IdMap("profiles"),
    }
    record = transformer().transform("patients", row(
        "dispatch_patient", id=123, doctor_id=10, user_id=55, first_name="Pat", last_name="Jones",
        birthdate="1990-03-04", sex="F",
    ), context)

    assert record.data["practice_id"] == PRACTICE_ID
    assert record.data["patient_number"] == "P000123"
    assert record.data["date_of_birth"] == "1990-03-04"
    assert record.data["gender"] == "female"
    assert record.data["profile_id"] is None
    assert record.unresolved_keys == {"profile_id": 55}


def test_patient_with_unknown_doctor_leaves_practice_unresolved():
    record = transformer().transform(
        "patients", row("dispatch_patient", id=5, doctor_id=99, sex="x"), {}
    )

    assert record.data["practice_id"] is None
    assert record.unresolved_keys["practice_id"] == 99
    assert record.data["gender"] == "prefer_not_to_say"
    assert record.enum_fallbacks == ["gender='x'"]


def test_case_falls_back_to_patient_doctor_practice():
    context = {
        "patients": IdMap("patients", {100: PATIENT_ID}),
        "doctor_practices": IdMap("doctor_practices", {10: PRACTICE_ID}),
    }
    record = transformer().transform("cases", row(
        "dispatch_project", id=500, name="", type=6, status=2, creator_id=77, patient_id=100,
        patient_doctor_id=10,
    ), context)

    assert record.data["patient_id"] == PATIENT_ID
    assert record.data["practice_id"] == PRACTICE_ID
    assert record.data["case_number"] == "CASE-000500"
    assert record.data["title"] == "Case CASE-000500"
    assert record.data["case_type"] == "orthodontic"
    assert record.data["current_state"] == "pending_review"


def test_case_unknown_status_uses_fallback():
    record = transformer().transform("cases", row("dispatch_project", id=1, status=99), {})

    assert record.data["current_state"] == CASE_STATE_FALLBACK
    assert "current_state=99" in record.enum_fallbacks


def test_project_keeps_legacy_uid_and_links_case():
    context = {
        "cases": IdMap("cases", {500: CASE_ID}),
        "doctor_practices": IdMap("doctor_practices", {10: PRACTICE_ID}),
        "profiles": IdMap("profiles", {10: DOCTOR_PROFILE_ID}),
    }
    uid = "55555555-5555-4555-8555-555555555555"
    record = transformer().transform("projects", row(
        "dispatch_project", id=500, uid=uid.upper(), type=1, status=3, creator_id=10,
        created_at="2021-03-15T12:00:00", file_size=-5,
    ), context)

    assert record.id == uid
    assert record.data["case_id"] == CASE_ID
    assert record.data["creator_id"] == DOCTOR_PROFILE_ID
    assert record.data["project_number"] == "PRJ-202103-000500"
    assert record.data["project_type"] == "scan"
    assert record.data["status"] == "approved"
    assert record.data["storage_bucket"] == "projects"
    assert record.data["file_size"] == 0


def test_project_with_malformed_uid_gets_new_id_and_is_reported():
    record = transformer().transform(
        "projects", row("dispatch_project", id=501, uid="abc123"), {}
    )

    assert is_valid_uuid(record.id)
    assert record.data["id"] == record.id
    assert record.substituted_fields == ["id"]
    assert record.data["legacy_uid"] == "abc123"


def test_message_on_project_resolves_case():
    context = {
        "cases": IdMap("cases", {500: CASE_ID}),
        "profiles": IdMap("profiles", {10: DOCTOR_PROFILE_ID}),
    }
    record = transformer().transform("case_messages", row(
        "dispatch_record", id=900, object_id="500", content_model="project",
        content_app_label="dispatch", sender_id=10, recipient_id=11, message_type=3,
    ), context)

    assert record.data["case_id"] == CASE_ID
    assert record.data["sender_id"] == DOCTOR_PROFILE_ID
    assert record.data["recipient_id"] is None
    assert record.unresolved_keys == {"recipient_id": 11}
    assert record.data["message_type"] == "instruction"
    assert record.data["body"] == ""


def test_message_on_other_content_has_no_case():
    record = transformer().transform("case_messages", row(
        "dispatch_record", id=901, object_id=3, content_model="invoice", sender_id=10,
    ), {})

    assert record.data["case_id"] is None
    assert record.unresolved_keys["case_id"] == "invoice:3"


def test_state_change_links_case_and_actor():
    context = {
        "cases": IdMap("cases", {500: CASE_ID}),
        "profiles": IdMap("profiles", {11: DOCTOR_PROFILE_ID}),
    }
    record = transformer().transform("case_state_history", row(
        "dispatch_state", id=700, object_id=500, content_model="project", content_app_label="dispatch",
        state=4, previous_state=" ", changed_by_id=11, reason=" Delivered ",
    ), context)

    assert record.data["case_id"] == CASE_ID
    assert record.data["changed_by_id"] == DOCTOR_PROFILE_ID
    assert record.data["to_state"] == "completed"
    assert record.data["from_state"] is None
    assert record.data["legacy_state_id"] == 700
    assert record.data["reason"] == "Delivered"
    assert record.data["metadata"]["content_type"] == "dispatch.project"


def test_state_change_on_other_content_has_no_case():
    record = transformer().transform("case_state_history", row(
        "dispatch_state", id=701, object_id=8, content_model="invoice", state=2,
    ), {})

    assert record.data["case_id"] is None
    assert record.unresolved_keys["case_id"] == "invoice:8"


# Every code seen in legacy data plus unknown and blank values
LEGACY_CODES = list(range(0, 10)) + [99, -1, "", "   ", None, "3", " 2 ", 2.0, "unknown", "F", "Scan", "m"]

ENUM_COLUMNS = [
    # (target table, legacy table, legacy column, target column, enum table, fallback)
    ("patients", "dispatch_patient", "sex", "gender", GENDER_MAP, GENDER_FALLBACK),
    ("cases", "dispatch_project", "type", "case_type", CASE_TYPE_MAP, CASE_TYPE_FALLBACK),
    ("cases", "dispatch_project", "status", "current_state", CASE_STATE_MAP, CASE_STATE_FALLBACK),
    ("projects", "dispatch_project", "type", "project_type", PROJECT_TYPE_MAP, PROJECT_TYPE_FALLBACK),
    ("projects", "dispatch_project", "status", "status", PROJECT_STATUS_MAP, PROJECT_STATUS_FALLBACK),
    ("case_messages", "dispatch_record", "message_type", "message_type", MESSAGE_TYPE_MAP, MESSAGE_TYPE_FALLBACK),
    ("case_state_history", "dispatch_state", "state", "to_state", STATE_CHANGE_MAP, STATE_CHANGE_FALLBACK),
]


@pytest.mark.parametrize(
    "table,legacy_table,legacy_column,column,enum_table,fallback",
    ENUM_COLUMNS,
    ids=[f"{c[0]}.{c[3]}" for c in ENUM_COLUMNS],
)
def test_every_legacy_code_maps_into_the_target_enum(table, legacy_table, legacy_column, column, enum_table, fallback):
    allowed = set(enum_table.values()) | {fallback}
    t = transformer()

    for i, code in enumerate(LEGACY_CODES, start=1):
        record = t.transform(table, row(legacy_table, id=i, **{legacy_column: code}), {})
        value = record.data[column]

        assert value is not None, code
        assert isinstance(value, str), code
        assert value in allowed, (code, value)
        if value == fallback and code not in (None, "", "   ") and remap_enum(code, enum_table, fallback)[1]:
            assert f"{column}={code!r}" in record.enum_fallbacks


def test_previous_state_is_null_only_when_blank():
    allowed = set(STATE_CHANGE_MAP.values()) | {STATE_CHANGE_FALLBACK}
    t = transformer()

    for i, code in enumerate(LEGACY_CODES, start=1):
        record = t.transform("case_state_history", row("dispatch_state", id=i, state=1, previous_state=code), {})
        if code in (None, "", "   "):
            assert record.data["from_state"] is None
        else:
            assert record.data["from_state"] in allowed, code
