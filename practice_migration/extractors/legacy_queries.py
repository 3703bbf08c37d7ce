"""Fixed SQL against the legacy Django schema (auth_user and dispatch_* tables)."""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .base import BaseExtractor, ExtractionResult
from .legacy_connection import LegacyConnectionManager
from ..models.record import LegacyRecord

logger = logging.getLogger(__name__)


OFFICES_SQL = """
    SELECT id, name, address, apt, city, state, zip, phone, emails,
           sq_customer_id, valid, created_at, updated_at
    FROM dispatch_office
    ORDER BY id
"""

USERS_SQL = """
    SELECT u.id, u.username, u.first_name, u.last_name, u.email,
           u.is_staff, u.is_active, u.is_superuser, u.date_joined, u.last_login,
           EXISTS (SELECT 1 FROM dispatch_patient p WHERE p.user_id = u.id) AS has_patient
    FROM auth_user u
    ORDER BY u.id
"""

OFFICE_DOCTORS_SQL = """
    SELECT id, office_id, user_id
    FROM dispatch_office_doctors
    ORDER BY id
"""

PATIENTS_SQL = """
    SELECT p.id, p.user_id, p.doctor_id, p.birthdate, p.sex, p.status,
           p.archived, p.created_at, p.updated_at,
           u.first_name, u.last_name, u.email
    FROM dispatch_patient p
    LEFT JOIN auth_user u ON u.id = p.user_id
    ORDER BY p.id
"""

PROJECTS_SQL = """
    SELECT pr.id, pr.uid, pr.name, pr.description, pr.type, pr.status,
           pr.creator_id, pr.patient_id, pr.file_size, pr.mime_type, pr.public,
           pr.created_at, pr.updated_at,
           pt.doctor_id AS patient_doctor_id
    FROM dispatch_project pr
    LEFT JOIN dispatch_patient pt ON pt.id = pr.patient_id
    ORDER BY pr.id
"""

RECORDS_SQL = """
    SELECT r.id, r.content_type_id, r.object_id, r.sender_id, r.recipient_id,
           r.subject, r.body, r.message_type, r.is_read, r.created_at, r.updated_at,
           ct.app_label AS content_app_label, ct.model AS content_model
    FROM dispatch_record r
    JOIN django_content_type ct ON ct.id = r.content_type_id
    ORDER BY r.id
"""

STATES_SQL = """
    SELECT s.id, s.content_type_id, s.object_id, s.state, s.previous_state,
           s.changed_by_id, s.reason, s.created_at,
           ct.app_label AS content_app_label, ct.model AS content_model
    FROM dispatch_state s
    LEFT JOIN django_content_type ct ON ct.id = s.content_type_id
    ORDER BY s.id
"""

COUNT_TABLES = [
    "auth_user",
    "dispatch_office",
    "dispatch_office_doctors",
    "dispatch_patient",
    "dispatch_project",
    "dispatch_record",
    "dispatch_state",
    "django_content_type",
]


class LegacyQueries(BaseExtractor):
    """
    Read-side access to the legacy database.

    Every getter returns LegacyRecord objects in primary-key order. The
    optional limit caps rows for trial runs.
    """

    def __init__(self, connection: LegacyConnectionManager):
        super().__init__()
        self.connection = connection
        self._getters: Dict[str, Callable[[Optional[int]], List[LegacyRecord]]] = {
            "offices": self.get_offices,
            "users": self.get_users,
            "office_doctors": self.get_office_doctors,
            "patients": self.get_patients,
            "projects": self.get_projects,
            "records": self.get_records,
            "states": self.get_states,
        }

    def _fetch(self, table: str, sql: str, limit: Optional[int] = None) -> List[LegacyRecord]:
        params: List[Any] = []
        if limit is not None:
            sql = f"{sql.rstrip()}\n    LIMIT %s"
            params.append(int(limit))

        rows = self.connection.query(sql, params or None)
        logger.info(f"Extracted {len(rows)} rows from {table}")
        records = (self.create_record(table, row) for row in rows)
        return [record for record in records if record is not None]

    def get_offices(self, limit: Optional[int] = None) -> List[LegacyRecord]:
        return self._fetch("dispatch_office", OFFICES_SQL, limit)

    def get_users(self, limit: Optional[int] = None) -> List[LegacyRecord]:
        return self._fetch("auth_user", USERS_SQL, limit)

    def get_office_doctors(self, limit: Optional[int] = None) -> List[LegacyRecord]:
        return self._fetch("dispatch_office_doctors", OFFICE_DOCTORS_SQL, limit)

    def get_patients(self, limit: Optional[int] = None) -> List[LegacyRecord]:
        return self._fetch("dispatch_patient", PATIENTS_SQL, limit)

    def get_projects(self, limit: Optional[int] = None) -> List[LegacyRecord]:
        return self._fetch("dispatch_project", PROJECTS_SQL, limit)

    def get_records(self, limit: Optional[int] = None) -> List[LegacyRecord]:
        return self._fetch("dispatch_record", RECORDS_SQL, limit)

    def get_states(self, limit: Optional[int] = None) -> List[LegacyRecord]:
        return self._fetch("dispatch_state", STATES_SQL, limit)

    def get_record_counts(self) -> Dict[str, int]:
        """Row counts for every legacy table the migration reads."""
        counts: Dict[str, int] = {}
        for table in COUNT_TABLES:
            rows = self.connection.query(f"SELECT COUNT(*) AS count FROM {table}")
            counts[table] = int(rows[0]["count"]) if rows else 0
        return counts

    def extract(self, entity: str, limit: Optional[int] = None) -> ExtractionResult:
        """
        Extract one legacy entity, timing the read.

        Raises:
            ValueError: If the entity name is unknown
            LegacyConnectionError: If the query fails
        """
        getter = self._getters.get(entity)
        if getter is None:
            raise ValueError(f"Unknown legacy entity: {entity}")

        self.reset()
        started_at = datetime.now(timezone.utc)
        records = getter(limit)
        result = self.get_extraction_result(records[0].table if records else entity, records)
        result.started_at = started_at
        result.completed_at = datetime.now(timezone.utc)
        result.metadata["limit"] = limit
        return result
