from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy.exc import OperationalError

from regdesk.rate_limit import RateLimitGate, SlidingWindowLimiter


def _store_down(*_args, **_kwargs):
    raise OperationalError("INSERT INTO rate_limits", {}, Exception("database is locked"))


def test_first_request_opens_window(database, clock):
    gate = RateLimitGate(database, clock=clock)

    decision = gate.check("ip:10.0.0.1", 3, 3600, fail_open=False)

    assert decision.allowed is True
    assert decision.remaining == 2
    record = gate.usage("ip:10.0.0.1")
    assert record.count == 1


def test_denies_after_max_and_reports_retry_after(database, clock):
    gate = RateLimitGate(database, clock=clock)

    results = [gate.check("ip:10.0.0.2", 3, 3600, fail_open=False) for _ in range(3)]
    assert [r.allowed for r in results] == [True, True, True]
    assert [r.remaining for r in results] == [2, 1, 0]

    clock.advance(minutes=10)
    denied = gate.check("ip:10.0.0.2", 3, 3600, fail_open=False)
    assert denied.allowed is False
    assert denied.store_error is False
    assert denied.retry_after_seconds == 3000


def test_same_email_twice_in_window_is_denied(database, clock):
    gate = RateLimitGate(database, clock=clock)

    first = gate.check("email:captain@example.com", 1, 3600, fail_open=False)
    clock.advance(seconds=5)
    second = gate.check("email:captain@example.com", 1, 3600, fail_open=False)

    assert first.allowed is True
    assert second.allowed is False
    assert second.retry_after_seconds > 0


def test_window_resets_exactly_at_boundary(database, clock):
    gate = RateLimitGate(database, clock=clock)
    key = "ip:10.0.0.3"

    gate.check(key, 1, 60, fail_open=False)
    clock.advance(seconds=59)
    assert gate.check(key, 1, 60, fail_open=False).allowed is False

    clock.advance(seconds=1)
    reset = gate.check(key, 1, 60, fail_open=False)
    assert reset.allowed is True
    assert reset.remaining == 0
    record = gate.usage(key)
    assert record.count == 1


def test_fixed_window_allows_burst_across_boundary(database, clock):
    gate = RateLimitGate(database, clock=clock)
    key = "ip:10.0.0.4"

    gate.check(key, 2, 60, fail_open=False)
    clock.advance(seconds=58)
    assert gate.check(key, 2, 60, fail_open=False).allowed is True
    clock.advance(seconds=2)
    assert gate.check(key, 2, 60, fail_open=False).allowed is True
    assert gate.check(key, 2, 60, fail_open=False).allowed is True
    assert gate.check(key, 2, 60, fail_open=False).allowed is False


def test_keys_are_independent(database, clock):
    gate = RateLimitGate(database, clock=clock)

    assert gate.check("email:a@example.com", 1, 3600, fail_open=False).allowed is True
    assert gate.check("email:b@example.com", 1, 3600, fail_open=False).allowed is True
    assert gate.check("email:a@example.com", 1, 3600, fail_open=False).allowed is False


def test_concurrent_checks_never_admit_more_than_max(database):
    gate = RateLimitGate(database)

    def attempt(_):
        return gate.check("ip:10.0.0.5", 5, 3600, fail_open=False).allowed

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(attempt, range(20)))

    assert outcomes.count(True) == 5


def test_store_failure_follows_call_site_policy(database, clock, monkeypatch):
    gate = RateLimitGate(database, clock=clock)
    monkeypatch.setattr(gate, "_upsert", _store_down)

    closed = gate.check("email:x@example.com", 1, 3600, fail_open=False)
    opened = gate.check("ip:10.0.0.6", 3, 3600, fail_open=True)

    assert closed.allowed is False
    assert closed.store_error is True
    assert opened.allowed is True
    assert opened.store_error is True


def test_rejects_invalid_limits(database, clock):
    gate = RateLimitGate(database, clock=clock)

    with pytest.raises(ValueError):
        gate.check("ip:1", 0, 60, fail_open=False)
    with pytest.raises(ValueError):
        gate.check("ip:1", 1, 0, fail_open=False)


def test_cleanup_removes_only_stale_windows(database, clock):
    gate = RateLimitGate(database, clock=clock)
    gate.check("ip:old", 3, 3600, fail_open=False)
    clock.advance(minutes=90)
    gate.check("ip:new", 3, 3600, fail_open=False)

    removed = gate.cleanup(3600)

    assert removed == 1
    assert gate.usage("ip:old") is None
    assert gate.usage("ip:new") is not None
    # A missing row behaves like a fresh window.
    assert gate.check("ip:old", 3, 3600, fail_open=False).remaining == 2


def test_sliding_window_limiter_and_prune(monkeypatch):
    now = [1000.0]
    monkeypatch.setattr("regdesk.rate_limit.time.monotonic", lambda: now[0])
    limiter = SlidingWindowLimiter()

    assert limiter.allow("http:1", 2, 60) is True
    assert limiter.allow("http:1", 2, 60) is True
    assert limiter.allow("http:1", 2, 60) is False

    now[0] += 61
    assert limiter.allow("http:1", 2, 60) is True

    now[0] += 120
    assert limiter.prune(60) == 1
