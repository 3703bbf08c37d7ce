"""Command-line entry points for the practice migration."""

import argparse
import json
import logging
import sys
from typing import List, Optional

from .config import MigrationSettings
from .errors import ConfigurationError, LegacyConnectionError, MigrationError, TargetStoreError
from .extractors.legacy_connection import LegacyConnectionManager
from .extractors.legacy_queries import LegacyQueries
from .models.migration import MigrationStatus
from .orchestrator import MigrationOrchestrator, PHASE_NAMES
from .services.embeddings import EmbeddingGenerator
from .services.progress import ProgressReporter, RUNS_TABLE, STATUS_ROW_ID, STATUS_TABLE
from .services.target_store import TargetStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# --skip-* switch -> phase name
SKIP_FLAGS = {
    "skip_practices": "practices",
    "skip_profiles": "profiles",
    "skip_practice_members": "practice_members",
    "skip_patients": "patients",
    "skip_cases": "cases",
    "skip_projects": "projects",
    "skip_messages": "case_messages",
    "skip_states": "case_state_history",
}


def _add_migration_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--dry-run", action="store_true", help="Transform and validate without writing")
    parser.add_argument("--batch-size", type=int, help="Records per upsert batch")
    parser.add_argument("--overwrite", action="store_true", help="Overwrite rows that already exist")
    parser.add_argument("--enable-embeddings", action="store_true", help="Embed case and message text")
    parser.add_argument("--limit", type=int, help="Cap legacy rows per phase (trial runs)")
    parser.add_argument("--report", metavar="PATH", help="Write the JSON run report to PATH")
    parser.add_argument("--no-verify", action="store_true", help="Skip the post-run count and orphan checks")
    parser.add_argument("--env-file", help="Load settings from this .env file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="practice-migrate",
        description="Practice Migration - Move the legacy practice database into Supabase",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Full migration
    run_parser = subparsers.add_parser("run", help="Run every phase in dependency order")
    _add_migration_options(run_parser)
    run_parser.add_argument("--skip-practices", action="store_true", help="Skip practices")
    run_parser.add_argument("--skip-profiles", action="store_true", help="Skip profiles")
    run_parser.add_argument("--skip-practice-members", action="store_true", help="Skip practice members")
    run_parser.add_argument("--skip-patients", action="store_true", help="Skip patients")
    run_parser.add_argument("--skip-cases", action="store_true", help="Skip cases")
    run_parser.add_argument("--skip-projects", action="store_true", help="Skip projects")
    run_parser.add_argument("--skip-messages", action="store_true", help="Skip case messages")
    run_parser.add_argument("--skip-states", action="store_true", help="Skip case state history")

    # Single phase
    phase_parser = subparsers.add_parser("phase", help="Run a single phase")
    phase_parser.add_argument("name", choices=PHASE_NAMES, help="Phase to run")
    _add_migration_options(phase_parser)

    # Legacy counts
    counts_parser = subparsers.add_parser("counts", help="Print legacy table row counts")
    counts_parser.add_argument("--env-file", help="Load settings from this .env file")
    counts_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    # Status row
    status_parser = subparsers.add_parser("status", help="Print the shared migration status")
    status_parser.add_argument("--env-file", help="Load settings from this .env file")
    status_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    return parser


def setup_logging(settings: MigrationSettings, verbose: bool = False) -> None:
    """Configure root logging once for the process."""
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    if settings.log_file:
        handler = logging.FileHandler(settings.log_file)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)


def apply_overrides(settings: MigrationSettings, args: argparse.Namespace) -> MigrationSettings:
    """Command-line flags win over environment settings."""
    if getattr(args, "dry_run", False):
        settings.dry_run = True
    if getattr(args, "batch_size", None):
        settings.batch_size = args.batch_size
    if getattr(args, "overwrite", False):
        settings.conflict_policy = "overwrite"
    if getattr(args, "enable_embeddings", False):
        settings.enable_embeddings = True
    return settings


def skipped_phases(args: argparse.Namespace) -> List[str]:
    return [phase for flag, phase in SKIP_FLAGS.items() if getattr(args, flag, False)]


def run_migration(args: argparse.Namespace, settings: MigrationSettings) -> int:
    """Run all phases (or one) and print the summary."""
    settings.validate()
    target_store = TargetStore.from_settings(settings)

    embeddings = None
    if settings.enable_embeddings:
        embeddings = EmbeddingGenerator(
            target_store,
            api_key=settings.openai_api_key,
            model=settings.embedding_model,
            batch_size=settings.embedding_batch_size,
            max_retries=settings.max_retries,
            inter_batch_delay=settings.embedding_batch_delay_seconds,
            dry_run=settings.dry_run,
        )

    with LegacyConnectionManager(settings) as connection:
        if not connection.test_connection():
            raise LegacyConnectionError("Legacy database did not answer a test query")

        orchestrator = MigrationOrchestrator(
            settings,
            LegacyQueries(connection),
            target_store,
            embeddings=embeddings,
            limit=args.limit,
            verify=not args.no_verify,
        )
        if not orchestrator.loader.validate_connection():
            raise TargetStoreError("Target store health check failed")

        if args.command == "phase":
            result = orchestrator.run_migration(phases=[args.name])
        else:
            result = orchestrator.run_migration(skip=skipped_phases(args))

    print(ProgressReporter.summary(result))

    if args.report:
        path = orchestrator.save_report(args.report)
        print(f"\nReport written to {path}")

    return 0 if result.status == MigrationStatus.COMPLETED else 1


def show_counts(args: argparse.Namespace, settings: MigrationSettings) -> int:
    """Print legacy table row counts."""
    settings.validate(require_target=False)
    with LegacyConnectionManager(settings) as connection:
        counts = LegacyQueries(connection).get_record_counts()

    print("\n=== Legacy Row Counts ===")
    for table, count in counts.items():
        print(f"  {table:<26}{count:>10}")
    return 0


def show_status(args: argparse.Namespace, settings: MigrationSettings) -> int:
    """Print the shared status row and the latest run."""
    settings.validate(require_legacy=False)
    target_store = TargetStore.from_settings(settings)

    status_rows = target_store.select(
        STATUS_TABLE, filters={"id": f"eq.{STATUS_ROW_ID}"}, order=None, limit=1
    )
    runs = target_store.select(
        RUNS_TABLE, columns="id,type,status,start_time,end_time", order="start_time.desc", limit=1
    )

    print("\n=== Migration Status ===")
    print(json.dumps(status_rows[0] if status_rows else {}, indent=2, default=str))
    if runs:
        print("\n=== Latest Run ===")
        print(json.dumps(runs[0], indent=2, default=str))
    return 0


COMMANDS = {
    "run": run_migration,
    "phase": run_migration,
    "counts": show_counts,
    "status": show_status,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command not in COMMANDS:
        parser.print_help()
        return 1

    try:
        settings = MigrationSettings.from_env(dotenv_path=getattr(args, "env_file", None))
        apply_overrides(settings, args)
        setup_logging(settings, verbose=getattr(args, "verbose", False))
        return COMMANDS[args.command](args, settings)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    except MigrationError as e:
        logger.error(f"Migration aborted: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
