"""Maps from legacy identifiers to target UUIDs, rebuilt from the target store each run."""

import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from .target_store import TargetStore
from ..extractors.legacy_queries import LegacyQueries
from ..models.record import LegacyRecord
from ..utils import is_valid_uuid, legacy_key, member_key, normalize_email, patient_key

logger = logging.getLogger(__name__)


class IdMap:
    """
    A legacy key -> target UUID lookup.

    Integer-looking keys are normalized to int so "12" and 12 resolve the
    same row. Rows whose target id is not a valid UUID are ignored.
    """

    def __init__(self, name: str, mapping: Optional[Dict[Any, str]] = None):
        self.name = name
        self._map: Dict[Any, str] = {}
        for key, value in (mapping or {}).items():
            self.add(key, value)

    @staticmethod
    def _normalize(key: Any) -> Any:
        as_int = legacy_key(key)
        if as_int is not None:
            return as_int
        return key

    def add(self, key: Any, target_id: Any) -> bool:
        if key is None or key == "" or not is_valid_uuid(target_id):
            return False
        self._map[self._normalize(key)] = str(target_id)
        return True

    def get(self, key: Any) -> Optional[str]:
        if key is None:
            return None
        return self._map.get(self._normalize(key))

    def __contains__(self, key: Any) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._map)

    def __iter__(self) -> Iterator[Any]:
        return iter(self._map)

    def items(self):
        return self._map.items()

    def __repr__(self) -> str:
        return f"IdMap({self.name!r}, size={len(self)})"


class IdReconciler:
    """
    Builds ID maps by reading already-migrated rows from the target store.

    An empty target yields empty maps; dependent records then fail
    validation and are rejected rather than written with null keys.
    """

    def __init__(self, target_store: TargetStore, legacy_queries: Optional[LegacyQueries] = None):
        """
        Args:
            target_store: Client for the target store
            legacy_queries: Legacy reader, needed only for doctor_practices()
        """
        self.target_store = target_store
        self.legacy_queries = legacy_queries

    def _build(self, name: str, table: str, key_column: str) -> IdMap:
        rows = self.target_store.select(
            table,
            columns=f"id,{key_column}",
            filters={key_column: "not.is.null"},
        )
        id_map = IdMap(name)
        for row in rows:
            id_map.add(row.get(key_column), row.get("id"))
        logger.info(f"Built {name} map: {len(id_map)} entries from {len(rows)} {table} rows")
        return id_map

    def practices(self) -> IdMap:
        """legacy_id -> practices.id"""
        return self._build("practices", "practices", "legacy_id")

    def profiles(self) -> Tuple[IdMap, IdMap]:
        """(legacy_user_id -> profiles.id, lower-cased email -> profiles.id)"""
        rows = self.target_store.select("profiles", columns="id,legacy_user_id,email")
        by_legacy_id = IdMap("profiles")
        by_email = IdMap("profiles_by_email")
        for row in rows:
            by_legacy_id.add(row.get("legacy_user_id"), row.get("id"))
            email = normalize_email(row.get("email"))
            if email:
                by_email.add(email, row.get("id"))
        logger.info(
            f"Built profiles maps: {len(by_legacy_id)} by legacy id, {len(by_email)} by email"
        )
        return by_legacy_id, by_email

    def practice_members(self) -> IdMap:
        """practice_id|profile_id -> practice_members.id"""
        rows = self.target_store.select("practice_members", columns="id,practice_id,profile_id")
        id_map = IdMap("practice_members")
        for row in rows:
            if row.get("practice_id") and row.get("profile_id"):
                id_map.add(member_key(row["practice_id"], row["profile_id"]), row.get("id"))
        logger.info(f"Built practice_members map: {len(id_map)} entries")
        return id_map

    def patients(self) -> Tuple[IdMap, IdMap]:
        """(legacy_patient_id -> patients.id, first|last|dob -> patients.id)"""
        rows = self.target_store.select(
            "patients",
            columns="id,legacy_patient_id,first_name,last_name,date_of_birth",
        )
        by_legacy_id = IdMap("patients")
        by_identity = IdMap("patients_by_identity")
        for row in rows:
            by_legacy_id.add(row.get("legacy_patient_id"), row.get("id"))
            key = patient_key(row.get("first_name"), row.get("last_name"), row.get("date_of_birth"))
            if key:
                by_identity.add(key, row.get("id"))
        logger.info(
            f"Built patients maps: {len(by_legacy_id)} by legacy id, {len(by_identity)} by identity"
        )
        return by_legacy_id, by_identity

    def cases(self) -> IdMap:
        """legacy_project_id -> cases.id"""
        return self._build("cases", "cases", "legacy_project_id")

    def projects(self) -> IdMap:
        """legacy_id -> projects.id"""
        return self._build("projects", "projects", "legacy_id")

    def case_messages(self) -> IdMap:
        """legacy_record_id -> case_messages.id"""
        return self._build("case_messages", "case_messages", "legacy_record_id")

    def case_state_history(self) -> IdMap:
        """legacy_state_id -> case_state_history.id"""
        return self._build("case_state_history", "case_state_history", "legacy_state_id")

    def doctor_practices(
        self,
        practices_map: IdMap,
        office_doctors: Optional[Iterable[LegacyRecord]] = None,
    ) -> IdMap:
        """
        Legacy doctor user id -> practice UUID.

        A doctor linked to several offices maps to the first one (lowest
        dispatch_office_doctors id) whose practice has been migrated.
        """
        if office_doctors is None:
            if self.legacy_queries is None:
                raise ValueError("doctor_practices needs office_doctors or a legacy reader")
            office_doctors = self.legacy_queries.get_office_doctors()

        links: List[LegacyRecord] = sorted(office_doctors, key=lambda r: r.id or 0)
        id_map = IdMap("doctor_practices")
        unresolved = 0
        for link in links:
            user_id = link.get("user_id")
            if user_id is None or user_id in id_map:
                continue
            practice_id = practices_map.get(link.get("office_id"))
            if practice_id is None:
                unresolved += 1
                continue
            id_map.add(user_id, practice_id)

        if unresolved:
            logger.warning(f"{unresolved} office-doctor links point at unmigrated offices")
        logger.info(f"Built doctor_practices map: {len(id_map)} doctors")
        return id_map
