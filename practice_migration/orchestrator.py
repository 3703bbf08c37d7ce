"""Migration orchestrator - runs the entity phases in dependency order."""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .config import MigrationSettings
from .errors import MigrationError, TargetStoreError
from .extractors.legacy_queries import LegacyQueries
from .loaders.base import BaseLoader
from .loaders.batch_loader import BatchLoader
from .models.migration import MigrationRun, MigrationStatus, MigrationStep
from .models.record import LegacyRecord, RecordStatus, TargetRecord
from .services.embeddings import EmbeddingGenerator
from .services.id_reconciliation import IdMap, IdReconciler
from .services.progress import ProgressReporter
from .services.target_store import TargetStore
from .services.transformer import EntityTransformer
from .services.validator import RecordValidator
from .services.verification import MigrationVerifier, VerificationReport
from .utils import member_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Phase:
    """One entity migration: a legacy extraction feeding a target table."""
    name: str
    source: str
    maps: tuple
    embed: bool = False
    legacy_column: Optional[str] = None  # target column holding the legacy primary key


PHASES: List[Phase] = [
    Phase("practices", "offices", ("practices",), legacy_column="legacy_id"),
    Phase("profiles", "users", ("profiles",), legacy_column="legacy_user_id"),
    Phase("practice_members", "office_doctors", ("practices", "profiles", "practice_members", "doctor_practices")),
    Phase("patients", "patients", ("patients", "profiles", "doctor_practices"), legacy_column="legacy_patient_id"),
    Phase("cases", "projects", ("cases", "patients", "doctor_practices"), embed=True, legacy_column="legacy_project_id"),
    Phase("projects", "projects", ("projects", "cases", "profiles", "doctor_practices"), legacy_column="legacy_id"),
    Phase("case_messages", "records", ("case_messages", "cases", "profiles"), embed=True, legacy_column="legacy_record_id"),
    Phase("case_state_history", "states", ("case_state_history", "cases", "profiles"), legacy_column="legacy_state_id"),
]

PHASE_NAMES = [p.name for p in PHASES]

# How a loaded record is found again by later phases (map name -> key function)
_MAP_KEYS: Dict[str, Dict[str, Callable[[TargetRecord], Any]]] = {
    "practices": {"practices": lambda r: r.data.get("legacy_id")},
    "profiles": {
        "profiles": lambda r: r.data.get("legacy_user_id"),
        "profiles_by_email": lambda r: r.data.get("email"),
    },
    "practice_members": {
        "practice_members": lambda r: member_key(r.data.get("practice_id"), r.data.get("profile_id")),
    },
    "patients": {
        "patients": lambda r: r.data.get("legacy_patient_id"),
        "patients_by_identity": lambda r: r.identity_key,
    },
    "cases": {"cases": lambda r: r.data.get("legacy_project_id")},
    "projects": {"projects": lambda r: r.data.get("legacy_id")},
    "case_messages": {"case_messages": lambda r: r.data.get("legacy_record_id")},
    "case_state_history": {"case_state_history": lambda r: r.data.get("legacy_state_id")},
}


class MigrationOrchestrator:
    """
    Orchestrates a complete migration run.

    For each enabled phase, in order:
    - rebuild the ID maps it needs from the target store
    - extract the legacy rows
    - transform, de-duplicate and validate them
    - upsert the survivors in batches
    - record a MigrationStep

    A fatal phase error (legacy connection, target store while reconciling)
    fails the run and stops the remaining phases, since they depend on it.
    Failed batches do not stop anything; they fail the run at the end.
    """

    def __init__(
        self,
        settings: MigrationSettings,
        legacy: LegacyQueries,
        target_store: TargetStore,
        loader: Optional[BaseLoader] = None,
        reporter: Optional[ProgressReporter] = None,
        embeddings: Optional[EmbeddingGenerator] = None,
        limit: Optional[int] = None,
        verify: bool = True,
    ):
        """
        Initialize the orchestrator.

        Args:
            settings: Migration settings
            legacy: Legacy reader
            target_store: Target store client
            loader: Batch loader (built from settings when omitted)
            reporter: Progress reporter (built from settings when omitted)
            embeddings: Optional embedding generator for case and message text
            limit: Cap on legacy rows per phase
            verify: Check counts and orphaned foreign keys after the phases
        """
        self.settings = settings
        self.legacy = legacy
        self.target_store = target_store
        self.loader = loader or BatchLoader(
            target_store,
            batch_size=settings.batch_size,
            conflict_policy=settings.conflict_policy,
            max_retries=settings.max_retries,
            backoff_factor=settings.retry_backoff,
            dry_run=settings.dry_run,
        )
        self.reporter = reporter or ProgressReporter(target_store, enabled=not settings.dry_run)
        self.embeddings = embeddings
        self.limit = limit
        self.verify = verify
        self.reconciler = IdReconciler(target_store, legacy)
        self.transformer = EntityTransformer()
        self.validator = RecordValidator()
        self.run: Optional[MigrationRun] = None

        self._office_doctors: Optional[List[LegacyRecord]] = None
        self._overlay: Dict[str, IdMap] = {}

    # maps

    def _office_doctor_links(self) -> List[LegacyRecord]:
        if self._office_doctors is None:
            self._office_doctors = self.legacy.get_office_doctors()
        return self._office_doctors

    def _with_overlay(self, id_map: IdMap) -> IdMap:
        overlay = self._overlay.get(id_map.name)
        if overlay:
            for key, value in overlay.items():
                if key not in id_map:
                    id_map.add(key, value)
        return id_map

    def build_context(self, phase: Phase) -> Dict[str, IdMap]:
        """Rebuild the ID maps a phase needs from the current target state."""
        context: Dict[str, IdMap] = {}
        needed = set(phase.maps)

        if "practices" in needed or "doctor_practices" in needed:
            context["practices"] = self._with_overlay(self.reconciler.practices())
        if "profiles" in needed:
            by_id, by_email = self.reconciler.profiles()
            context["profiles"] = self._with_overlay(by_id)
            context["profiles_by_email"] = self._with_overlay(by_email)
        if "practice_members" in needed:
            context["practice_members"] = self._with_overlay(self.reconciler.practice_members())
        if "patients" in needed:
            by_id, by_identity = self.reconciler.patients()
            context["patients"] = self._with_overlay(by_id)
            context["patients_by_identity"] = self._with_overlay(by_identity)
        if "cases" in needed:
            context["cases"] = self._with_overlay(self.reconciler.cases())
        if "projects" in needed:
            context["projects"] = self._with_overlay(self.reconciler.projects())
        if "case_messages" in needed:
            context["case_messages"] = self._with_overlay(self.reconciler.case_messages())
        if "case_state_history" in needed:
            context["case_state_history"] = self._with_overlay(self.reconciler.case_state_history())
        if "doctor_practices" in needed:
            context["doctor_practices"] = self.reconciler.doctor_practices(
                context["practices"], self._office_doctor_links()
            )

        return context

    def _remember(self, phase: Phase, records: Iterable[TargetRecord]) -> None:
        """Keep ids in memory so later phases resolve them without another read (or any write, in a dry run)."""
        for map_name, key_func in _MAP_KEYS.get(phase.name, {}).items():
            overlay = self._overlay.setdefault(map_name, IdMap(map_name))
            for record in records:
                overlay.add(key_func(record), record.id)

    # phase pipeline

    @staticmethod
    def _dedupe(
        phase: Phase, records: List[TargetRecord]
    ) -> Tuple[List[TargetRecord], List[Tuple[TargetRecord, TargetRecord]]]:
        """
        Drop later records that collide within this run on id or identity key
        (email for profiles, name and date of birth for patients).

        Returns:
            (unique records, [(duplicate, record it duplicates)])
        """
        by_id: Dict[str, TargetRecord] = {}
        by_identity: Dict[str, TargetRecord] = {}
        unique: List[TargetRecord] = []
        duplicates: List[Tuple[TargetRecord, TargetRecord]] = []

        for record in records:
            kept = by_id.get(record.id)
            if kept is None and record.identity_key:
                kept = by_identity.get(record.identity_key)
            if kept is not None:
                record.status = RecordStatus.SKIPPED
                record.warnings.append(f"duplicate of legacy id {kept.legacy_id} in this run")
                logger.warning(
                    f"Skipping {phase.name} legacy id {record.legacy_id}: "
                    f"duplicate of legacy id {kept.legacy_id}"
                )
                duplicates.append((record, kept))
                continue
            by_id[record.id] = record
            if record.identity_key:
                by_identity[record.identity_key] = record
            unique.append(record)

        return unique, duplicates

    def _alias_duplicates(
        self, phase: Phase, duplicates: List[Tuple[TargetRecord, TargetRecord]]
    ) -> None:
        """Point each duplicate's legacy id at the row its twin became."""
        if phase.legacy_column is None:
            return
        overlay = self._overlay.setdefault(phase.name, IdMap(phase.name))
        for duplicate, kept in duplicates:
            if kept.status == RecordStatus.LOADED or (kept.existing and kept.status == RecordStatus.SKIPPED):
                overlay.add(duplicate.legacy_id, kept.id)

    def _backfill_legacy_ids(
        self,
        phase: Phase,
        step: MigrationStep,
        context: Dict[str, IdMap],
        records: List[TargetRecord],
    ) -> int:
        """
        Write the legacy id onto existing rows that were matched another way
        (email, name and date of birth), so the next run finds them directly.
        Only rows whose legacy column is still null are touched.
        """
        if phase.legacy_column is None or self.settings.dry_run:
            return 0
        known = context.get(phase.name) or IdMap(phase.name)
        backfilled = 0
        for record in records:
            if known.get(record.legacy_id) is not None:
                continue
            try:
                self.target_store.update(
                    phase.name,
                    {"id": f"eq.{record.id}", phase.legacy_column: "is.null"},
                    {phase.legacy_column: record.legacy_id},
                )
                backfilled += 1
            except TargetStoreError as e:
                step.warnings.append(
                    f"could not record legacy id {record.legacy_id} on {phase.name} {record.id}: {e.message}"
                )
                logger.warning(f"Backfilling {phase.legacy_column} on {record.id} failed: {e}")
        if backfilled:
            logger.info(f"{phase.name}: recorded {phase.legacy_column} on {backfilled} matched rows")
        return backfilled

    def _record_quality(self, phase: Phase, records: List[TargetRecord]) -> None:
        quality = self.run.data_quality
        for record in records:
            for column in record.substituted_fields:
                quality.record_substitution(
                    phase.name, f"legacy id {record.legacy_id}: {column} regenerated"
                )
            for fallback in record.enum_fallbacks:
                quality.record_enum_fallback(
                    phase.name, f"legacy id {record.legacy_id}: {fallback}"
                )

    def _run_phase(self, phase: Phase, step: MigrationStep) -> None:
        """Run one phase. Fatal errors propagate to the caller."""
        step.status = MigrationStatus.RUNNING
        step.started_at = datetime.now(timezone.utc)
        self.run.current_step = phase.name
        self.reporter.report_progress(phase.name, 0, 0)

        context = self.build_context(phase)
        extraction = self.legacy.extract(phase.source, self.limit)
        step.records_total = extraction.total_extracted
        step.warnings.extend(extraction.warnings)
        logger.debug(
            f"Read {extraction.total_extracted} {phase.source} rows in {extraction.duration_seconds or 0:.2f}s"
        )

        records = self.transformer.transform_many(phase.name, extraction.records, context)
        self._record_quality(phase, records)

        unique, duplicates = self._dedupe(phase, records)

        validation = self.validator.partition_entity(phase.name, unique)
        for record in validation.rejected:
            self.run.data_quality.record_rejection(
                phase.name, f"legacy id {record.legacy_id}: {'; '.join(record.error_messages)}"
            )
            step.errors.append({
                "legacy_id": record.legacy_id,
                "type": "rejected",
                "errors": [e.to_dict() for e in record.validation_errors],
            })
        for _ in range(validation.nulled_optional_keys):
            self.run.data_quality.record_nulled_key(phase.name)

        to_write: List[TargetRecord] = []
        already_present: List[TargetRecord] = []
        for record in validation.valid:
            if record.existing and self.loader_policy == "skip":
                record.status = RecordStatus.SKIPPED
                already_present.append(record)
            else:
                to_write.append(record)

        if already_present:
            logger.info(f"{phase.name}: {len(already_present)} records already migrated, skipping")
            self._backfill_legacy_ids(phase, step, context, already_present)

        step.records_rejected = validation.rejected_count
        step.records_skipped = len(duplicates) + len(already_present)

        def on_progress(loaded: int, total: int, errors: int) -> None:
            self.reporter.report_progress(phase.name, loaded, total, errors)

        load_result = self.loader.load(phase.name, to_write, progress_callback=on_progress)

        step.records_attempted = load_result.total_attempted
        step.records_succeeded = load_result.total_succeeded
        step.records_failed = load_result.total_failed
        step.retries = load_result.retries
        step.batches = [b.to_dict() for b in load_result.batches]
        step.errors.extend(load_result.errors)

        loaded = [r for r in to_write if r.status == RecordStatus.LOADED]
        self._remember(phase, loaded + [r for r in validation.valid if r.existing])
        self._alias_duplicates(phase, duplicates)

        if phase.embed and self.embeddings is not None and loaded:
            embedding_result = self.embeddings.generate(loaded)
            self.run.metadata.setdefault("embeddings", {})[phase.name] = embedding_result.to_dict()

        step.status = MigrationStatus.FAILED if step.records_failed else MigrationStatus.COMPLETED
        step.completed_at = datetime.now(timezone.utc)

        logger.info(
            f"Phase {phase.name}: {step.records_total} extracted, {step.records_succeeded} loaded, "
            f"{step.records_skipped} skipped, {step.records_rejected} rejected, "
            f"{step.records_failed} failed"
        )

    def verify_targets(self) -> VerificationReport:
        """Compare each phase that ran with what the target now holds."""
        counts = {
            s.table: s.records_total
            for s in self.run.steps
            if s.status in (MigrationStatus.COMPLETED, MigrationStatus.FAILED)
        }
        logger.info(f"=== VERIFY: {len(counts)} tables ===")
        verifier = MigrationVerifier(self.target_store, {p.name: p.legacy_column for p in PHASES})
        return verifier.verify(counts)

    @property
    def loader_policy(self) -> str:
        return getattr(self.loader, "conflict_policy", self.settings.conflict_policy)

    def run_migration(
        self,
        phases: Optional[List[str]] = None,
        skip: Optional[Iterable[str]] = None,
    ) -> MigrationRun:
        """
        Run the migration.

        Args:
            phases: Phase names to run (default: all, always in dependency order)
            skip: Phase names to skip

        Returns:
            MigrationRun with per-step results and the data-quality report
        """
        selected = set(phases or PHASE_NAMES)
        unknown = selected.difference(PHASE_NAMES)
        if unknown:
            raise ValueError(f"Unknown phase(s): {', '.join(sorted(unknown))}")
        skipped = set(skip or ())

        self.run = MigrationRun(
            dry_run=self.settings.dry_run,
            metadata={
                "phases": [p for p in PHASE_NAMES if p in selected and p not in skipped],
                "limit": self.limit,
                "conflict_policy": self.loader_policy,
                "batch_size": self.settings.batch_size,
            },
        )
        self.run.start()
        self.reporter.start_run(self.run)

        try:
            for phase in PHASES:
                if phase.name not in selected:
                    continue

                step = self.run.add_step(name=phase.name, table=phase.name)
                if phase.name in skipped:
                    step.status = MigrationStatus.SKIPPED
                    logger.info(f"=== SKIPPING {phase.name} ===")
                    continue

                logger.info(f"=== PHASE: {phase.name} ===")
                try:
                    self._run_phase(phase, step)
                except Exception as e:
                    step.status = MigrationStatus.FAILED
                    step.completed_at = datetime.now(timezone.utc)
                    step.errors.append({"type": "fatal", "error": str(e)})
                    if isinstance(e, MigrationError) and e.phase is None:
                        e.phase = phase.name
                    raise

            if self.verify and not self.settings.dry_run:
                self.run.metadata["verification"] = self.verify_targets().to_dict()

        except Exception as e:
            logger.error(f"Migration failed: {e}")
            if isinstance(e, MigrationError):
                error = e.to_dict()
            else:
                error = {"type": type(e).__name__, "message": str(e), "phase": self.run.current_step}
            error["timestamp"] = datetime.now(timezone.utc).isoformat()
            self.run.errors.append(error)

        finally:
            self.run.update_totals()
            failed = bool(self.run.errors) or any(
                s.status == MigrationStatus.FAILED for s in self.run.steps
            )
            self.run.finish(MigrationStatus.FAILED if failed else MigrationStatus.COMPLETED)
            self.reporter.finish_run(self.run)

        return self.run

    def save_report(self, path: str) -> Path:
        """Write the run as JSON."""
        if self.run is None:
            raise RuntimeError("No migration run to report")
        filepath = Path(path)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, "w") as f:
            json.dump(self.run.to_dict(), f, indent=2, default=str)
        logger.info(f"Saved migration report to {filepath}")
        return filepath
