from practice_migration.models.record import LegacyRecord
from practice_migration.services.id_reconciliation import IdMap, IdReconciler

from conftest import DOCTOR_PROFILE_ID, FakeTargetStore, PATIENT_ID, PRACTICE_ID

OTHER_PRACTICE_ID = "66666666-6666-4666-8666-666666666666"


def link(link_id, office_id, user_id):
    return LegacyRecord(
        id=link_id,
        table="dispatch_office_doctors",
        data={"id": link_id, "office_id": office_id, "user_id": user_id},
    )


def test_id_map_normalizes_integer_keys():
    id_map = IdMap("practices", {"12": PRACTICE_ID})

    assert id_map.get(12) == PRACTICE_ID
    assert "12" in id_map
    assert 13 not in id_map


def test_id_map_ignores_non_uuid_targets():
    id_map = IdMap("practices")

    assert id_map.add(1, "not-a-uuid") is False
    assert id_map.add(None, PRACTICE_ID) is False
    assert len(id_map) == 0


def test_empty_target_yields_empty_maps():
    reconciler = IdReconciler(FakeTargetStore())

    assert len(reconciler.practices()) == 0
    by_id, by_email = reconciler.profiles()
    assert len(by_id) == 0 and len(by_email) == 0
    assert len(reconciler.cases()) == 0


def test_practices_skip_rows_without_legacy_id():
    store = FakeTargetStore({"practices": [
        {"id": PRACTICE_ID, "legacy_id": 1},
        {"id": OTHER_PRACTICE_ID, "legacy_id": None},
    ]})

    practices = IdReconciler(store).practices()

    assert practices.get(1) == PRACTICE_ID
    assert len(practices) == 1


def test_profiles_indexed_by_legacy_id_and_email():
    store = FakeTargetStore({"profiles": [
        {"id": DOCTOR_PROFILE_ID, "legacy_user_id": 10, "email": "Ann@Downtown.example"},
    ]})

    by_id, by_email = IdReconciler(store).profiles()

    assert by_id.get(10) == DOCTOR_PROFILE_ID
    assert by_email.get("ann@downtown.example") == DOCTOR_PROFILE_ID


def test_patients_indexed_by_identity():
    store = FakeTargetStore({"patients": [
        {"id": PATIENT_ID, "legacy_patient_id": None, "first_name": "Pat",
         "last_name": "Jones", "date_of_birth": "1990-03-04"},
    ]})

    by_id, by_identity = IdReconciler(store).patients()

    assert len(by_id) == 0
    assert by_identity.get("pat|jones|1990-03-04") == PATIENT_ID


def test_doctor_practices_first_link_wins():
    practices = IdMap("practices", {1: PRACTICE_ID, 2: OTHER_PRACTICE_ID})
    links = [link(7, 2, 10), link(3, 1, 10), link(4, 2, 11)]

    doctors = IdReconciler(FakeTargetStore()).doctor_practices(practices, links)

    assert doctors.get(10) == PRACTICE_ID
    assert doctors.get(11) == OTHER_PRACTICE_ID


def test_doctor_practices_skips_unmigrated_offices():
    practices = IdMap("practices", {2: OTHER_PRACTICE_ID})
    links = [link(1, 1, 10), link(2, 2, 10), link(3, 9, 12)]

    doctors = IdReconciler(FakeTargetStore()).doctor_practices(practices, links)

    assert doctors.get(10) == OTHER_PRACTICE_ID
    assert 12 not in doctors


def test_doctor_practices_reads_links_from_legacy(legacy):
    practices = IdMap("practices", {1: PRACTICE_ID})

    doctors = IdReconciler(FakeTargetStore(), legacy).doctor_practices(practices)

    assert doctors.get(10) == PRACTICE_ID
