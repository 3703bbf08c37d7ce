"""Progress reporting to the shared status row and the migration_runs log."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .target_store import TargetStore
from ..errors import TargetStoreError
from ..models.migration import MigrationRun, MigrationStatus

logger = logging.getLogger(__name__)

STATUS_ROW_ID = 1
STATUS_TABLE = "migration_status"
RUNS_TABLE = "migration_runs"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def progress_percentage(loaded: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(min(loaded, total) * 100.0 / total, 2)


class ProgressReporter:
    """
    Publishes migration progress for dashboards to poll.

    The status row (migration_status.id = 1) is overwritten with the latest
    snapshot; it is not a log. Each run also gets one migration_runs row,
    created at start and closed at finish. Write failures are logged and
    swallowed so reporting can never abort a migration.
    """

    def __init__(self, target_store: Optional[TargetStore], enabled: bool = True):
        self.target_store = target_store
        self.enabled = enabled and target_store is not None
        self.last_snapshot: Dict[str, Any] = {}
        self.write_failures = 0

    def _safe(self, action: str, method: str, *args, **kwargs) -> bool:
        if not self.enabled:
            return False
        try:
            getattr(self.target_store, method)(*args, **kwargs)
            return True
        except TargetStoreError as e:
            self.write_failures += 1
            logger.warning(f"Progress reporter could not {action}: {e}")
            return False

    def _write_status(self, current_step: str, percentage: float, details: Dict[str, Any]) -> bool:
        row = {
            "id": STATUS_ROW_ID,
            "current_step": current_step,
            "progress_percentage": percentage,
            "details": details,
            "updated_at": _now(),
        }
        self.last_snapshot = row
        return self._safe(
            "update status row",
            "upsert",
            STATUS_TABLE,
            [row],
            conflict_policy="overwrite",
        )

    def start_run(self, run: MigrationRun) -> None:
        """Insert the migration_runs row and reset the status row."""
        self._safe(
            "record run start",
            "insert",
            RUNS_TABLE,
            [{
                "id": run.id,
                "type": run.type.value,
                "status": MigrationStatus.RUNNING.value,
                "start_time": (run.started_at or datetime.now(timezone.utc)).isoformat(),
                "log": {"dry_run": run.dry_run, "metadata": run.metadata},
            }],
        )
        self._write_status("starting", 0.0, {"run_id": run.id, "status": MigrationStatus.RUNNING.value})
        logger.info(f"Migration run {run.id} started")

    def report_progress(self, step_name: str, loaded: int, total: int, errors: int = 0) -> None:
        """Overwrite the status row with the latest snapshot for a step."""
        percentage = progress_percentage(loaded, total)
        self._write_status(
            step_name,
            percentage,
            {"loaded": loaded, "total": total, "errors": errors},
        )
        logger.debug(f"{step_name}: {loaded}/{total} loaded ({percentage}%), {errors} errors")

    def finish_run(self, run: MigrationRun) -> None:
        """Close the run row and write the terminal status (100, or -1 on failure)."""
        failed = run.status == MigrationStatus.FAILED
        log = self.build_log(run)
        self._safe(
            "record run finish",
            "update",
            RUNS_TABLE,
            {"id": f"eq.{run.id}"},
            {
                "status": run.status.value,
                "end_time": (run.completed_at or datetime.now(timezone.utc)).isoformat(),
                "log": log,
            },
        )
        self._write_status(
            "failed" if failed else "completed",
            -1.0 if failed else 100.0,
            {
                "run_id": run.id,
                "status": run.status.value,
                "succeeded": run.total_records_succeeded,
                "failed": run.total_records_failed,
                "skipped": run.total_records_skipped,
                "rejected": run.total_records_rejected,
            },
        )
        logger.info(f"Migration run {run.id} finished: {run.status.value}")

    @staticmethod
    def build_log(run: MigrationRun) -> Dict[str, Any]:
        """Diagnostic payload stored in migration_runs.log."""
        return {
            "dry_run": run.dry_run,
            "duration_seconds": run.duration_seconds,
            "totals": {
                "attempted": run.total_records_attempted,
                "succeeded": run.total_records_succeeded,
                "failed": run.total_records_failed,
                "skipped": run.total_records_skipped,
                "rejected": run.total_records_rejected,
            },
            "steps": [
                {
                    "name": s.name,
                    "status": s.status.value,
                    "total": s.records_total,
                    "succeeded": s.records_succeeded,
                    "failed": s.records_failed,
                    "skipped": s.records_skipped,
                    "rejected": s.records_rejected,
                    "retries": s.retries,
                }
                for s in run.steps
            ],
            "errors": run.errors,
            "data_quality": run.data_quality.to_dict(),
            "verification": run.metadata.get("verification"),
        }

    @staticmethod
    def summary(run: MigrationRun) -> str:
        """Console summary printed at the end of a run."""
        lines: List[str] = [
            "",
            "=" * 60,
            f"MIGRATION {run.status.value.upper()}" + (" (dry run)" if run.dry_run else ""),
            "=" * 60,
            f"Run ID:   {run.id}",
        ]
        if run.duration_seconds is not None:
            lines.append(f"Duration: {run.duration_seconds:.1f}s")
        lines.append("")
        lines.append(f"{'Step':<20}{'Status':<12}{'Total':>7}{'OK':>7}{'Skip':>7}{'Rej':>7}{'Fail':>7}")
        for step in run.steps:
            lines.append(
                f"{step.name:<20}{step.status.value:<12}{step.records_total:>7}"
                f"{step.records_succeeded:>7}{step.records_skipped:>7}"
                f"{step.records_rejected:>7}{step.records_failed:>7}"
            )
        lines.append("")
        lines.append(
            f"Totals: {run.total_records_succeeded} loaded, {run.total_records_skipped} skipped, "
            f"{run.total_records_rejected} rejected, {run.total_records_failed} failed"
        )

        quality = run.data_quality
        if not quality.is_clean:
            lines.append("")
            lines.append("Data quality:")
            for entity, q in quality.entities.items():
                lines.append(
                    f"  {entity}: {q.substituted_ids} substituted ids, {q.rejected} rejected, "
                    f"{q.enum_fallbacks} enum fallbacks, {q.nulled_optional_keys} nulled optional keys"
                )

        verification = run.metadata.get("verification")
        if verification:
            lines.append("")
            lines.append(f"Verification: {'passed' if verification['passed'] else 'PROBLEMS FOUND'}")
            for table, check in verification["tables"].items():
                orphans = sum(check["orphans"].values())
                if check["missing"] or orphans or check["error"]:
                    detail = f", error: {check['error']}" if check["error"] else ""
                    lines.append(
                        f"  {table}: {check['target_count']}/{check['legacy_count']} migrated, "
                        f"{orphans} orphaned references{detail}"
                    )

        for error in run.errors:
            lines.append(f"ERROR [{error.get('phase')}]: {error.get('message')}")

        return "\n".join(lines)
