"""Shared fixtures: an in-memory target store and a scripted legacy database."""

import copy
from typing import Any, Dict, List, Optional

import pytest

from practice_migration.config import MigrationSettings
from practice_migration.errors import LegacyConnectionError, TargetStoreError
from practice_migration.extractors.legacy_queries import (
    LegacyQueries,
    OFFICE_DOCTORS_SQL,
    OFFICES_SQL,
    PATIENTS_SQL,
    PROJECTS_SQL,
    RECORDS_SQL,
    STATES_SQL,
    USERS_SQL,
)

PRACTICE_ID = "11111111-1111-4111-8111-111111111111"
DOCTOR_PROFILE_ID = "22222222-2222-4222-8222-222222222222"
PATIENT_ID = "33333333-3333-4333-8333-333333333333"
CASE_ID = "44444444-4444-4444-8444-444444444444"

_SQL_BY_ENTITY = {
    "offices": OFFICES_SQL,
    "users": USERS_SQL,
    "office_doctors": OFFICE_DOCTORS_SQL,
    "patients": PATIENTS_SQL,
    "projects": PROJECTS_SQL,
    "records": RECORDS_SQL,
    "states": STATES_SQL,
}


def _matches(row: Dict[str, Any], column: str, condition: str) -> bool:
    value = row.get(column)
    if condition == "not.is.null":
        return value is not None
    if condition == "is.null":
        return value is None
    if condition.startswith("eq."):
        return str(value) == condition[3:]
    raise AssertionError(f"Unsupported filter {column}={condition}")


class FakeTargetStore:
    """
    In-memory stand-in for TargetStore with PostgREST upsert semantics.

    Queue exceptions in `failures` to make the next write calls raise, or in
    `table_failures[table]` to fail only writes to that table.
    """

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            name: [dict(row) for row in rows] for name, rows in (tables or {}).items()
        }
        self.failures: List[Exception] = []
        self.table_failures: Dict[str, List[Exception]] = {}
        self.calls: List[tuple] = []
        self.healthy = True

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def _maybe_fail(self, table: str) -> None:
        queued = self.table_failures.get(table)
        if queued:
            raise queued.pop(0)
        if self.failures:
            raise self.failures.pop(0)

    def select(self, table, columns="*", filters=None, order="id", page_size=1000, limit=None):
        self.calls.append(("select", table, filters))
        rows = [r for r in self.rows(table) if all(_matches(r, c, f) for c, f in (filters or {}).items())]
        if order:
            column, _, direction = order.partition(".")
            rows = sorted(rows, key=lambda r: str(r.get(column) or ""), reverse=direction == "desc")
        if limit is not None:
            rows = rows[:limit]
        if columns != "*":
            wanted = columns.split(",")
            rows = [{c: r.get(c) for c in wanted} for r in rows]
        return copy.deepcopy(rows)

    def upsert(self, table, rows, conflict_policy="skip", on_conflict="id"):
        self.calls.append(("upsert", table, len(rows), conflict_policy))
        self._maybe_fail(table)
        existing = {r[on_conflict]: r for r in self.rows(table)}
        for row in rows:
            current = existing.get(row[on_conflict])
            if current is None:
                self.rows(table).append(copy.deepcopy(row))
                existing[row[on_conflict]] = self.rows(table)[-1]
            elif conflict_policy == "overwrite":
                current.update(copy.deepcopy(row))

    def insert(self, table, rows, returning=False):
        self.calls.append(("insert", table, len(rows)))
        self._maybe_fail(table)
        self.rows(table).extend(copy.deepcopy(rows))
        return copy.deepcopy(rows) if returning else []

    def update(self, table, filters, values):
        self.calls.append(("update", table, filters))
        self._maybe_fail(table)
        for row in self.rows(table):
            if all(_matches(row, c, f) for c, f in filters.items()):
                row.update(copy.deepcopy(values))

    def health_check(self):
        return self.healthy

    def upserts(self, table: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == "upsert" and c[1] == table]


class FakeLegacyConnection:
    """Answers the legacy SQL with canned rows keyed by extractor entity."""

    def __init__(self, data: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.data = {entity: [] for entity in _SQL_BY_ENTITY}
        self.data.update(data or {})
        self.queries: List[tuple] = []
        self.broken: set = set()

    def query(self, sql, params=None):
        self.queries.append((sql, params))
        if sql.startswith("SELECT COUNT(*)"):
            return [{"count": 7}]
        for entity, base_sql in _SQL_BY_ENTITY.items():
            if sql.startswith(base_sql.rstrip()):
                if entity in self.broken:
                    raise LegacyConnectionError(f"Legacy query failed: relation for {entity} is gone")
                rows = [dict(r) for r in self.data[entity]]
                if params:
                    rows = rows[:params[0]]
                return rows
        raise AssertionError(f"Unexpected SQL: {sql}")


def retryable(status_code: int = 503) -> TargetStoreError:
    return TargetStoreError(f"POST returned {status_code}", status_code=status_code, retryable=True)


def rejected(status_code: int = 400) -> TargetStoreError:
    return TargetStoreError(f"POST returned {status_code}", status_code=status_code, retryable=False)


@pytest.fixture
def settings():
    return MigrationSettings(
        supabase_url="https://example.supabase.co",
        supabase_service_role_key="service-key",
        batch_size=2,
        max_retries=2,
        retry_backoff=0,
    )


@pytest.fixture
def store():
    return FakeTargetStore()


@pytest.fixture
def legacy_data():
    return {
        "offices": [
            {"id": 1, "name": "Downtown Dental", "address": "1 Main St", "city": "Austin",
             "state": "TX", "zip": "78701", "phone": "555-0100",
             "emails": "front@downtown.example, billing@downtown.example",
             "valid": True, "created_at": "2020-01-02T10:00:00"},
        ],
        "users": [
            {"id": 10, "username": "drsmith", "first_name": "Ann", "last_name": "Smith",
             "email": "Ann@Downtown.example", "is_staff": False, "is_superuser": False,
             "is_active": True, "date_joined": "2019-05-01T09:00:00", "has_patient": False},
            {"id": 11, "username": "tech", "first_name": "Tom", "last_name": "Tech",
             "email": "tom@lab.example", "is_staff": True, "is_superuser": False,
             "is_active": True, "date_joined": "2019-06-01T09:00:00", "has_patient": False},
            {"id": 12, "username": "pat", "first_name": "Pat", "last_name": "Jones",
             "email": "pat@home.example", "is_staff": False, "is_superuser": False,
             "is_active": True, "date_joined": "2019-07-01T09:00:00", "has_patient": True},
        ],
        "office_doctors": [
            {"id": 1, "office_id": 1, "user_id": 10},
        ],
        "patients": [
            {"id": 100, "user_id": 12, "doctor_id": 10, "birthdate": "1990-03-04",
             "sex": "F", "status": 1, "archived": False, "created_at": "2020-02-01T00:00:00",
             "first_name": "Pat", "last_name": "Jones", "email": "pat@home.example"},
        ],
        "projects": [
            {"id": 500, "uid": "55555555-5555-4555-8555-555555555555", "name": "Upper arch scan",
             "description": "Full upper arch", "type": 1, "status": 1, "creator_id": 10,
             "patient_id": 100, "file_size": 2048, "mime_type": "model/stl", "public": False,
             "created_at": "2021-03-15T12:00:00", "patient_doctor_id": 10},
        ],
        "records": [
            {"id": 900, "content_type_id": 7, "object_id": 500, "sender_id": 10,
             "recipient_id": 11, "subject": "Scan ready", "body": "Please review the scan.",
             "message_type": 2, "is_read": False, "created_at": "2021-03-16T08:00:00",
             "content_app_label": "dispatch", "content_model": "project"},
        ],
        "states": [
            {"id": 700, "content_type_id": 7, "object_id": 500, "state": 2, "previous_state": 1,
             "changed_by_id": 11, "reason": "Scan received", "created_at": "2021-03-16T09:00:00",
             "content_app_label": "dispatch", "content_model": "project"},
        ],
    }


@pytest.fixture
def connection(legacy_data):
    return FakeLegacyConnection(legacy_data)


@pytest.fixture
def legacy(connection):
    return LegacyQueries(connection)
