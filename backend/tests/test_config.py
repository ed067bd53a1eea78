from dataclasses import replace
import json
import logging

import pytest

from regdesk.config import _normalize_database_url, load_settings
from regdesk.logging_utils import JsonFormatter


def test_defaults_match_registration_policy(monkeypatch):
    for name in ("ENV", "ADMIN_KEY", "MAX_SUSPICIOUS_ATTEMPTS", "IP_BLOCK_MINUTES", "DATABASE_URL"):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings.registration_email_max == 1
    assert settings.registration_ip_max == 3
    assert settings.registration_email_window_seconds == 3600
    assert settings.max_suspicious_attempts == 5
    assert settings.ip_block_minutes == 30
    assert settings.block_cleanup_interval_seconds == 900
    assert settings.is_sqlite is True


def test_env_overrides_and_bad_ints_fall_back(monkeypatch):
    monkeypatch.setenv("IP_BLOCK_MINUTES", "45")
    monkeypatch.setenv("PORT", "9001")
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("REGISTRATION_IP_MAX", "not-a-number")
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example")

    settings = load_settings()

    assert settings.ip_block_minutes == 45
    assert settings.port == 9001
    assert settings.debug is True
    assert settings.registration_ip_max == 3
    assert settings.cors_origins == ["https://a.example", "https://b.example"]


def test_production_requires_explicit_admin_key(monkeypatch):
    monkeypatch.setenv("ENV", "production")
    monkeypatch.delenv("ADMIN_KEY", raising=False)

    with pytest.raises(RuntimeError):
        load_settings().validate()

    monkeypatch.setenv("ADMIN_KEY", "a-real-secret")
    load_settings().validate()


def test_threshold_must_be_positive():
    settings = replace(load_settings(), max_suspicious_attempts=0)
    with pytest.raises(RuntimeError):
        settings.validate()


def test_postgres_urls_are_normalized():
    url = _normalize_database_url("postgres://user:pw@db:5432/regdesk", "sqlite:///./x.db")
    assert url == "postgresql+psycopg2://user:pw@db:5432/regdesk?sslmode=require"
    assert _normalize_database_url(None, "sqlite:///./x.db") == "sqlite:///./x.db"


def test_json_formatter_includes_structured_fields():
    record = logging.LogRecord("regdesk.gate", logging.INFO, __file__, 1, "Rate limit exceeded", None, None)
    record.event = "rate_limit_denied"
    record.scope = "email"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["logger"] == "regdesk.gate"
    assert payload["event"] == "rate_limit_denied"
    assert payload["scope"] == "email"
    assert "ip" not in payload
