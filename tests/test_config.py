import pytest
from pydantic import ValidationError

from toolgate.config import Settings, get_settings, reset_settings_cache


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in (
        "DATABASE_URL",
        "USE_MEMORY_STORE",
        "TOOL_CACHE_TTL_SECONDS",
        "COUNTER_SWEEP_INTERVAL_SECONDS",
        "MINUTE_BUCKET_RETENTION_MINUTES",
        "DEFAULT_USER_ROLES",
    ):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


def test_defaults(clean_env):
    settings = Settings.from_env()
    assert settings.use_memory_store is False
    assert settings.tool_cache_ttl_seconds == 60.0
    assert settings.counter_sweep_interval_seconds == 60.0
    assert settings.minute_bucket_retention_minutes == 10
    assert settings.default_roles == ["user"]


def test_environment_overrides(clean_env, monkeypatch):
    monkeypatch.setenv("USE_MEMORY_STORE", "true")
    monkeypatch.setenv("TOOL_CACHE_TTL_SECONDS", "15")
    monkeypatch.setenv("DEFAULT_USER_ROLES", "user, analyst ,")

    settings = Settings.from_env()

    assert settings.use_memory_store is True
    assert settings.tool_cache_ttl_seconds == 15.0
    assert settings.default_roles == ["user", "analyst"]


def test_dotenv_file_is_read(clean_env, monkeypatch):
    (clean_env / ".env").write_text("MINUTE_BUCKET_RETENTION_MINUTES=5\nUSE_MEMORY_STORE=true\n")
    monkeypatch.setenv("USE_MEMORY_STORE", "false")

    settings = Settings.from_env()

    assert settings.minute_bucket_retention_minutes == 5
    # Process environment wins over .env
    assert settings.use_memory_store is False


@pytest.mark.parametrize(
    "env_name, value",
    [
        ("TOOL_CACHE_TTL_SECONDS", "0"),
        ("COUNTER_SWEEP_INTERVAL_SECONDS", "-1"),
        ("MINUTE_BUCKET_RETENTION_MINUTES", "0"),
    ],
)
def test_invalid_values_rejected(clean_env, monkeypatch, env_name, value):
    monkeypatch.setenv(env_name, value)
    with pytest.raises(ValidationError):
        Settings.from_env()


def test_pool_sizes_validated():
    with pytest.raises(ValidationError):
        Settings(db_pool_min_size=5, db_pool_max_size=2)


def test_get_settings_is_cached(clean_env, monkeypatch):
    monkeypatch.setenv("TOOL_CACHE_TTL_SECONDS", "30")
    first = get_settings()
    monkeypatch.setenv("TOOL_CACHE_TTL_SECONDS", "45")
    assert get_settings() is first

    reset_settings_cache()
    assert get_settings().tool_cache_ttl_seconds == 45.0
