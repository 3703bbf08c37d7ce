import pytest

from practice_migration.config import MigrationSettings
from practice_migration.errors import ConfigurationError

BASE_ENV = {
    "LEGACY_DB_HOST": "legacy.internal",
    "LEGACY_DB_NAME": "dispatch",
    "LEGACY_DB_USER": "reader",
    "LEGACY_DB_PASSWORD": "secret",
    "SUPABASE_URL": "https://example.supabase.co/",
    "SUPABASE_SERVICE_ROLE_KEY": "service-key",
}


def test_from_env_reads_values_and_defaults():
    env = dict(BASE_ENV, MIGRATION_BATCH_SIZE="250", LEGACY_DB_SSL="true", MIGRATION_DRY_RUN="1")

    settings = MigrationSettings.from_env(env)

    assert settings.legacy_db_host == "legacy.internal"
    assert settings.legacy_db_port == 5432
    assert settings.legacy_db_ssl is True
    assert settings.supabase_url == "https://example.supabase.co"
    assert settings.batch_size == 250
    assert settings.dry_run is True
    assert settings.conflict_policy == "skip"
    settings.validate()


def test_from_os_environ(monkeypatch):
    for key, value in BASE_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setenv("MIGRATION_CONFLICT_POLICY", "Overwrite")

    settings = MigrationSettings.from_env()

    assert settings.conflict_policy == "overwrite"
    assert settings.supabase_service_role_key == "service-key"


def test_bad_integer_raises_configuration_error():
    with pytest.raises(ConfigurationError):
        MigrationSettings.from_env(dict(BASE_ENV, MIGRATION_BATCH_SIZE="lots"))


def test_validate_lists_every_problem():
    settings = MigrationSettings.from_env({"MIGRATION_BATCH_SIZE": "0", "MIGRATION_CONFLICT_POLICY": "replace"})

    with pytest.raises(ConfigurationError) as exc_info:
        settings.validate()

    message = str(exc_info.value)
    assert "SUPABASE_URL is required" in message
    assert "MIGRATION_BATCH_SIZE must be at least 1" in message
    assert "MIGRATION_CONFLICT_POLICY" in message


def test_validate_can_skip_legacy_requirements():
    settings = MigrationSettings.from_env(dict(BASE_ENV, LEGACY_DB_HOST=""))

    settings.validate(require_legacy=False)
    with pytest.raises(ConfigurationError):
        settings.validate()


def test_embeddings_need_api_key():
    settings = MigrationSettings.from_env(dict(BASE_ENV, MIGRATION_ENABLE_EMBEDDINGS="yes"))

    with pytest.raises(ConfigurationError):
        settings.validate()


def test_to_dict_masks_secrets():
    data = MigrationSettings.from_env(dict(BASE_ENV, OPENAI_API_KEY="sk-test")).to_dict()

    assert data["legacy_db_password"] == "***"
    assert data["supabase_service_role_key"] == "***"
    assert data["openai_api_key"] == "***"
    assert data["legacy_db_host"] == "legacy.internal"
