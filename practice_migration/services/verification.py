"""Post-run checks: legacy vs target row counts and orphaned foreign keys."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .target_store import TargetStore
from ..errors import TargetStoreError

logger = logging.getLogger(__name__)

# child table -> {foreign key column: parent table}
FOREIGN_KEYS: Dict[str, Dict[str, str]] = {
    "practice_members": {"practice_id": "practices", "profile_id": "profiles"},
    "patients": {"practice_id": "practices", "profile_id": "profiles"},
    "cases": {"patient_id": "patients", "practice_id": "practices"},
    "projects": {"case_id": "cases", "practice_id": "practices", "creator_id": "profiles"},
    "case_messages": {"case_id": "cases", "sender_id": "profiles", "recipient_id": "profiles"},
    "case_state_history": {"case_id": "cases", "changed_by_id": "profiles"},
}


@dataclass
class TableCheck:
    """Verification result for one target table."""
    table: str
    legacy_count: int = 0
    target_count: int = 0
    orphans: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def missing(self) -> int:
        return max(self.legacy_count - self.target_count, 0)

    @property
    def passed(self) -> bool:
        return self.error is None and not any(self.orphans.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "legacy_count": self.legacy_count,
            "target_count": self.target_count,
            "missing": self.missing,
            "orphans": self.orphans,
            "error": self.error,
            "passed": self.passed,
        }


@dataclass
class VerificationReport:
    checks: List[TableCheck] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def total_orphans(self) -> int:
        return sum(sum(c.orphans.values()) for c in self.checks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "total_orphans": self.total_orphans,
            "tables": {c.table: c.to_dict() for c in self.checks},
        }


class MigrationVerifier:
    """
    Compares what was read from the legacy store with what the target holds.

    Counts are only informative: rejections, duplicates merged by email or
    identity and regenerated keys all make target counts lower. An orphaned
    foreign key (a value with no parent row) is a real integrity problem.
    """

    def __init__(self, target_store: TargetStore, legacy_columns: Dict[str, Optional[str]]):
        """
        Args:
            target_store: Client for the target store
            legacy_columns: Table -> column holding the legacy id (None counts every row)
        """
        self.target_store = target_store
        self.legacy_columns = legacy_columns
        self._parent_ids: Dict[str, Set[str]] = {}

    def _ids(self, table: str) -> Set[str]:
        if table not in self._parent_ids:
            rows = self.target_store.select(table, columns="id")
            self._parent_ids[table] = {str(r["id"]) for r in rows}
        return self._parent_ids[table]

    def count_migrated(self, table: str) -> int:
        column = self.legacy_columns.get(table)
        if column is None:
            return len(self.target_store.select(table, columns="id"))
        return len(self.target_store.select(table, columns="id", filters={column: "not.is.null"}))

    def find_orphans(self, table: str) -> Dict[str, int]:
        """Foreign key column -> number of rows pointing at a missing parent."""
        orphans: Dict[str, int] = {}
        for column, parent in FOREIGN_KEYS.get(table, {}).items():
            rows = self.target_store.select(
                table, columns=f"id,{column}", filters={column: "not.is.null"}
            )
            parent_ids = self._ids(parent)
            orphans[column] = sum(1 for r in rows if str(r[column]) not in parent_ids)
        return orphans

    def verify(self, legacy_counts: Dict[str, int]) -> VerificationReport:
        """
        Check every table in legacy_counts (table -> rows read from the legacy store).

        A table whose reads fail is reported with its error; the other
        tables are still checked.
        """
        self._parent_ids = {}
        report = VerificationReport()

        for table, legacy_count in legacy_counts.items():
            check = TableCheck(table=table, legacy_count=legacy_count)
            try:
                check.target_count = self.count_migrated(table)
                check.orphans = self.find_orphans(table)
            except TargetStoreError as e:
                check.error = str(e)
                logger.error(f"Verification of {table} failed: {e}")
            report.checks.append(check)

            for column, count in check.orphans.items():
                if count:
                    logger.error(f"{table}.{column}: {count} rows reference a missing parent")
            if check.missing:
                logger.warning(
                    f"{table}: {check.target_count} migrated rows for {check.legacy_count} legacy rows"
                )

        logger.info(
            f"Verification {'passed' if report.passed else 'found problems'}: "
            f"{len(report.checks)} tables, {report.total_orphans} orphaned references"
        )
        return report
