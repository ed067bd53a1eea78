from concurrent.futures import ThreadPoolExecutor

from sqlalchemy.exc import OperationalError

from regdesk.abuse import AbuseEscalationTracker
from regdesk.blocklist import BlockGate


def _tracker(database, clock, **kwargs):
    blocks = BlockGate(database, clock=clock)
    return blocks, AbuseEscalationTracker(blocks, clock=clock, **kwargs)


def test_blocks_on_fifth_failure(database, clock):
    blocks, tracker = _tracker(database, clock)

    results = [tracker.record_failure("198.51.100.1") for _ in range(5)]

    assert results == [False, False, False, False, True]
    status = blocks.is_blocked("198.51.100.1")
    assert status.blocked is True
    assert (status.blocked_until - clock()).total_seconds() == 30 * 60


def test_counter_survives_block_and_reblocks(database, clock):
    blocks, tracker = _tracker(database, clock)
    for _ in range(5):
        tracker.record_failure("198.51.100.2")

    assert tracker.attempts("198.51.100.2") == 5
    clock.advance(minutes=5)
    assert tracker.record_failure("198.51.100.2") is True
    assert blocks.is_blocked("198.51.100.2").attempts == 2


def test_failures_are_tracked_per_ip(database, clock):
    blocks, tracker = _tracker(database, clock, max_attempts=2)

    tracker.record_failure("198.51.100.3")
    tracker.record_failure("198.51.100.4")

    assert blocks.is_blocked("198.51.100.3").blocked is False
    assert blocks.is_blocked("198.51.100.4").blocked is False


def test_sweep_drops_stale_entries(database, clock):
    _, tracker = _tracker(database, clock)
    tracker.record_failure("198.51.100.5")
    clock.advance(minutes=30)
    tracker.record_failure("198.51.100.6")
    clock.advance(minutes=31)

    assert tracker.sweep() == 1
    assert tracker.attempts("198.51.100.5") == 0
    assert tracker.attempts("198.51.100.6") == 1


def test_forget_and_snapshot(database, clock):
    _, tracker = _tracker(database, clock)
    tracker.record_failure("198.51.100.7")
    tracker.record_failure("198.51.100.8")
    tracker.record_failure("198.51.100.8")

    snapshot = tracker.snapshot()
    assert [item["ip"] for item in snapshot] == ["198.51.100.8", "198.51.100.7"]
    assert snapshot[0]["count"] == 2

    assert tracker.forget("198.51.100.8") is True
    assert tracker.forget("198.51.100.8") is False


def test_store_failure_does_not_raise(database, clock, monkeypatch):
    blocks, tracker = _tracker(database, clock, max_attempts=1)

    def broken_block(*_args, **_kwargs):
        raise OperationalError("INSERT INTO ip_blocks", {}, Exception("disk I/O error"))

    monkeypatch.setattr(blocks, "block", broken_block)

    assert tracker.record_failure("198.51.100.9") is False
    assert tracker.attempts("198.51.100.9") == 1


def test_concurrent_failures_are_all_counted(database, clock):
    _, tracker = _tracker(database, clock, max_attempts=1000)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda _: tracker.record_failure("198.51.100.10"), range(200)))

    assert tracker.attempts("198.51.100.10") == 200
