from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _normalize_database_url(value: str | None, fallback: str) -> str:
    raw = (value or fallback).strip() or fallback
    # Some dashboards accidentally store quoted values.
    if (raw.startswith('"') and raw.endswith('"')) or (raw.startswith("'") and raw.endswith("'")):
        raw = raw[1:-1].strip()

    if "://" not in raw:
        return raw

    scheme, suffix = raw.split("://", 1)
    scheme = scheme.lower()

    # Force a driver we install in production image.
    if scheme in {
        "postgres",
        "postgresql",
        "postgresql+psycopg",
        "postgresql+asyncpg",
        "postgresql+pg8000",
        "postgresql+psycopg2",
    }:
        url = f"postgresql+psycopg2://{suffix}"
        if "sslmode" not in url:
            separator = "&" if "?" in url else "?"
            url = f"{url}{separator}sslmode=require"
        return url

    return raw


_DEFAULT_ADMIN_KEY = "dev-only-admin-key"


@dataclass(frozen=True)
class Settings:
    env: str
    admin_key: str
    port: int
    database_url: str
    db_pool_size: int
    db_max_overflow: int
    db_pool_timeout: int
    db_pool_recycle: int
    cors_origins: list[str]
    debug: bool
    log_level: str
    enable_prometheus_metrics: bool
    rate_limit_requests_per_min: int
    analytics_requests_per_min: int
    registration_email_max: int
    registration_email_window_seconds: int
    registration_ip_max: int
    registration_ip_window_seconds: int
    max_suspicious_attempts: int
    ip_block_minutes: int
    suspicious_attempt_ttl_seconds: int
    rate_limit_retention_seconds: int
    rate_limit_cleanup_interval_seconds: int
    block_cleanup_interval_seconds: int
    min_captain_age: int
    max_captain_age: int

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def is_production(self) -> bool:
        return self.env.lower() not in {"development", "dev", "test", "testing"}

    def validate(self) -> None:
        """Raise early on dangerous mis-configurations in non-dev environments."""
        if self.is_production and (not self.admin_key or self.admin_key == _DEFAULT_ADMIN_KEY):
            raise RuntimeError(
                "ADMIN_KEY must be explicitly set in production. "
                "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
            )
        if self.max_suspicious_attempts < 1:
            raise RuntimeError("MAX_SUSPICIOUS_ATTEMPTS must be at least 1")


def load_settings() -> Settings:
    return Settings(
        env=os.getenv("ENV", "development"),
        admin_key=os.getenv("ADMIN_KEY", _DEFAULT_ADMIN_KEY).strip(),
        port=_as_int(os.getenv("PORT"), 8000),
        database_url=_normalize_database_url(
            os.getenv("DATABASE_URL"),
            "sqlite:///./regdesk.db",
        ),
        db_pool_size=max(1, _as_int(os.getenv("DB_POOL_SIZE"), 5)),
        db_max_overflow=max(0, _as_int(os.getenv("DB_MAX_OVERFLOW"), 10)),
        db_pool_timeout=max(1, _as_int(os.getenv("DB_POOL_TIMEOUT"), 30)),
        db_pool_recycle=max(60, _as_int(os.getenv("DB_POOL_RECYCLE"), 1800)),
        cors_origins=[
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", os.getenv("FRONTEND_URL", "http://localhost:3000")).split(",")
            if origin.strip()
        ],
        debug=_as_bool(os.getenv("DEBUG"), False),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
        enable_prometheus_metrics=_as_bool(os.getenv("ENABLE_PROMETHEUS_METRICS"), True),
        rate_limit_requests_per_min=_as_int(os.getenv("RATE_LIMIT_REQUESTS_PER_MIN"), 120),
        analytics_requests_per_min=_as_int(os.getenv("ANALYTICS_REQUESTS_PER_MIN"), 60),
        registration_email_max=max(1, _as_int(os.getenv("REGISTRATION_EMAIL_MAX"), 1)),
        registration_email_window_seconds=max(1, _as_int(os.getenv("REGISTRATION_EMAIL_WINDOW_SECONDS"), 3600)),
        registration_ip_max=max(1, _as_int(os.getenv("REGISTRATION_IP_MAX"), 3)),
        registration_ip_window_seconds=max(1, _as_int(os.getenv("REGISTRATION_IP_WINDOW_SECONDS"), 3600)),
        max_suspicious_attempts=_as_int(os.getenv("MAX_SUSPICIOUS_ATTEMPTS"), 5),
        ip_block_minutes=max(1, _as_int(os.getenv("IP_BLOCK_MINUTES"), 30)),
        suspicious_attempt_ttl_seconds=max(60, _as_int(os.getenv("SUSPICIOUS_ATTEMPT_TTL_SECONDS"), 3600)),
        rate_limit_retention_seconds=max(60, _as_int(os.getenv("RATE_LIMIT_RETENTION_SECONDS"), 3600)),
        rate_limit_cleanup_interval_seconds=max(
            1, _as_int(os.getenv("RATE_LIMIT_CLEANUP_INTERVAL_SECONDS"), 3600)
        ),
        block_cleanup_interval_seconds=max(1, _as_int(os.getenv("BLOCK_CLEANUP_INTERVAL_SECONDS"), 900)),
        min_captain_age=_as_int(os.getenv("MIN_CAPTAIN_AGE"), 55),
        max_captain_age=_as_int(os.getenv("MAX_CAPTAIN_AGE"), 100),
    )


settings = load_settings()
