"""Runtime settings read from the environment (and an optional .env file)."""

import os
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

CONFLICT_POLICIES = ("skip", "overwrite")

_SECRET_FIELDS = ("legacy_db_password", "supabase_service_role_key", "openai_api_key")


def _env_bool(env: Mapping[str, str], key: str, default: bool = False) -> bool:
    value = env.get(key)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    value = env.get(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    value = env.get(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {value!r}")


@dataclass
class MigrationSettings:
    """All settings needed to run a migration."""

    # Legacy store
    legacy_db_host: str = "localhost"
    legacy_db_port: int = 5432
    legacy_db_name: str = "legacy_db"
    legacy_db_user: str = "postgres"
    legacy_db_password: str = ""
    legacy_db_ssl: bool = False
    legacy_db_pool_size: int = 2

    # Target store
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_timeout_seconds: float = 30.0

    # Migration behaviour
    batch_size: int = 100
    max_retries: int = 3
    retry_backoff: float = 0.5
    conflict_policy: str = "skip"
    dry_run: bool = False
    enable_embeddings: bool = False
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Embeddings
    openai_api_key: Optional[str] = None
    embedding_model: str = "text-embedding-3-small"
    embedding_batch_size: int = 10
    embedding_batch_delay_seconds: float = 1.0

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[str] = None,
    ) -> "MigrationSettings":
        """
        Build settings from environment variables.

        Args:
            env: Mapping to read from (defaults to os.environ after loading .env)
            dotenv_path: Explicit .env file to load

        Returns:
            MigrationSettings instance
        """
        if env is None:
            load_dotenv(dotenv_path)
            env = os.environ

        return cls(
            legacy_db_host=env.get("LEGACY_DB_HOST", "localhost"),
            legacy_db_port=_env_int(env, "LEGACY_DB_PORT", 5432),
            legacy_db_name=env.get("LEGACY_DB_NAME", "legacy_db"),
            legacy_db_user=env.get("LEGACY_DB_USER", "postgres"),
            legacy_db_password=env.get("LEGACY_DB_PASSWORD", ""),
            legacy_db_ssl=_env_bool(env, "LEGACY_DB_SSL"),
            legacy_db_pool_size=_env_int(env, "LEGACY_DB_POOL_SIZE", 2),
            supabase_url=env.get("SUPABASE_URL", "").rstrip("/"),
            supabase_service_role_key=env.get("SUPABASE_SERVICE_ROLE_KEY", ""),
            supabase_timeout_seconds=_env_float(env, "SUPABASE_TIMEOUT_SECONDS", 30.0),
            batch_size=_env_int(env, "MIGRATION_BATCH_SIZE", 100),
            max_retries=_env_int(env, "MIGRATION_MAX_RETRIES", 3),
            retry_backoff=_env_float(env, "MIGRATION_RETRY_BACKOFF", 0.5),
            conflict_policy=env.get("MIGRATION_CONFLICT_POLICY", "skip").strip().lower(),
            dry_run=_env_bool(env, "MIGRATION_DRY_RUN"),
            enable_embeddings=_env_bool(env, "MIGRATION_ENABLE_EMBEDDINGS"),
            log_level=env.get("MIGRATION_LOG_LEVEL", "INFO").upper(),
            log_file=env.get("MIGRATION_LOG_FILE") or None,
            openai_api_key=env.get("OPENAI_API_KEY") or None,
            embedding_model=env.get("EMBEDDING_MODEL", "text-embedding-3-small"),
            embedding_batch_size=_env_int(env, "EMBEDDING_BATCH_SIZE", 10),
            embedding_batch_delay_seconds=_env_float(env, "EMBEDDING_BATCH_DELAY_SECONDS", 1.0),
        )

    def validate(self, require_legacy: bool = True, require_target: bool = True) -> None:
        """Raise ConfigurationError listing every missing or invalid value."""
        problems: List[str] = []

        if require_legacy:
            if not self.legacy_db_host:
                problems.append("LEGACY_DB_HOST is required")
            if not self.legacy_db_name:
                problems.append("LEGACY_DB_NAME is required")
            if not self.legacy_db_user:
                problems.append("LEGACY_DB_USER is required")

        if require_target:
            if not self.supabase_url:
                problems.append("SUPABASE_URL is required")
            if not self.supabase_service_role_key:
                problems.append("SUPABASE_SERVICE_ROLE_KEY is required")

        if self.batch_size < 1:
            problems.append("MIGRATION_BATCH_SIZE must be at least 1")
        if self.max_retries < 0:
            problems.append("MIGRATION_MAX_RETRIES must not be negative")
        if self.legacy_db_pool_size < 1:
            problems.append("LEGACY_DB_POOL_SIZE must be at least 1")
        if self.conflict_policy not in CONFLICT_POLICIES:
            problems.append(
                f"MIGRATION_CONFLICT_POLICY must be one of {', '.join(CONFLICT_POLICIES)}"
            )
        if self.enable_embeddings and not self.openai_api_key:
            problems.append("OPENAI_API_KEY is required when embeddings are enabled")

        if problems:
            raise ConfigurationError("Invalid configuration: " + "; ".join(problems))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary with secrets masked."""
        data = asdict(self)
        for key in _SECRET_FIELDS:
            if data.get(key):
                data[key] = "***"
        return data
