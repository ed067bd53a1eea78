from regdesk.blocklist import BlockGate
from regdesk.models import IPBlock


def test_unknown_ip_is_not_blocked(database, clock):
    gate = BlockGate(database, clock=clock)
    status = gate.is_blocked("192.0.2.1")

    assert status.blocked is False
    assert status.blocked_until is None


def test_block_is_active_until_expiry_then_lazily_removed(database, clock):
    gate = BlockGate(database, clock=clock)
    gate.block("192.0.2.2", 30, reason="manual")

    clock.advance(minutes=29, seconds=59)
    assert gate.is_blocked("192.0.2.2").blocked is True

    clock.advance(seconds=1)
    assert gate.is_blocked("192.0.2.2").blocked is False

    with database.session() as session:
        assert session.get(IPBlock, "192.0.2.2") is None


def test_reblock_extends_and_counts_attempts(database, clock):
    gate = BlockGate(database, clock=clock)
    first = gate.block("192.0.2.3", 30)
    clock.advance(minutes=10)
    second = gate.block("192.0.2.3", 30)

    assert first.attempts == 1
    assert second.attempts == 2
    assert second.blocked_until > first.blocked_until

    status = gate.is_blocked("192.0.2.3")
    assert status.attempts == 2
    assert status.blocked_until == second.blocked_until


def test_unblock_is_idempotent(database, clock):
    gate = BlockGate(database, clock=clock)
    gate.block("192.0.2.4", 30)

    assert gate.unblock("192.0.2.4") is True
    assert gate.is_blocked("192.0.2.4").blocked is False
    assert gate.unblock("192.0.2.4") is False
    assert gate.unblock("203.0.113.99") is False


def test_active_blocks_and_cleanup(database, clock):
    gate = BlockGate(database, clock=clock)
    gate.block("192.0.2.5", 5)
    gate.block("192.0.2.6", 60)
    clock.advance(minutes=10)

    active = [block.ip for block in gate.active_blocks()]
    assert active == ["192.0.2.6"]

    assert gate.cleanup_expired() == 1
    assert gate.cleanup_expired() == 0
    assert gate.is_blocked("192.0.2.6").blocked is True
