"""Test environment-driven settings."""
from clinic_dispatch import config


def test_defaults(monkeypatch):
    for name in ("DATABASE_URL", "REDIS_URL", "NOTIFIER_BACKEND", "LOG_LEVEL", "CLINIC_TIMEZONE"):
        monkeypatch.delenv(name, raising=False)

    settings = config.get_settings()

    assert settings.database_url == "sqlite:///clinic_queue.db"
    assert settings.redis_url is None
    assert settings.notifier_backend == "memory"
    assert settings.log_level == "INFO"
    assert settings.clinic_timezone == "UTC"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg://clinic:secret@db/clinic")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/1")
    monkeypatch.setenv("NOTIFIER_BACKEND", "Redis")
    monkeypatch.setenv("CLINIC_TIMEZONE", "Asia/Karachi")

    settings = config.get_settings()

    assert settings.database_url.startswith("postgresql+psycopg://")
    assert settings.redis_url == "redis://cache:6379/1"
    assert settings.notifier_backend == "redis"
    assert settings.clinic_timezone == "Asia/Karachi"


def test_business_defaults():
    assert config.DEFAULT_AVAILABILITY["slot_duration_minutes"] == 30
    assert config.EMERGENCY_KEYWORDS == ("emergency", "critical")
    assert config.QUEUE_NUMBER_ATTEMPTS == 2
