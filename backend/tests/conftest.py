from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from regdesk.config import settings as base_settings
from regdesk.db import Database


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def test_settings(tmp_path: Path):
    return replace(
        base_settings,
        env="test",
        admin_key="test-admin-key-123",
        database_url=f"sqlite:///{tmp_path / 'regdesk-test.db'}",
        enable_prometheus_metrics=True,
        rate_limit_requests_per_min=10_000,
    )


@pytest.fixture()
def database(test_settings):
    db = Database(test_settings)
    db.init_schema()
    try:
        yield db
    finally:
        db.dispose()
