import asyncio

import pytest

from regdesk.context import build_context
from regdesk.scheduler import PeriodicTask


def test_periodic_task_keeps_running_after_failure():
    calls = []

    def flaky():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("first run fails")
        return len(calls)

    async def scenario():
        task = PeriodicTask("flaky", 0.01, flaky)
        task.start()
        await asyncio.sleep(0.1)
        await task.stop()
        return task

    task = asyncio.run(scenario())
    assert task.failures == 1
    assert task.runs >= 2
    assert task.running is False


def test_periodic_task_rejects_bad_interval():
    with pytest.raises(ValueError):
        PeriodicTask("bad", 0, lambda: None)


def test_maintenance_jobs_clean_expired_state(test_settings, clock):
    ctx = build_context(test_settings, clock=clock)
    ctx.db.init_schema()
    try:
        ctx.gate.check("ip:203.0.113.1", 3, 3600, fail_open=False)
        ctx.blocks.block("203.0.113.2", 15)
        ctx.tracker.record_failure("203.0.113.3")
        clock.advance(hours=2)

        assert ctx.scheduler.cleanup_rate_limits() == 1
        assert ctx.scheduler.cleanup_blocks() == 1
        assert ctx.tracker.snapshot() == []
        assert ctx.blocks.active_blocks() == []
    finally:
        ctx.close()


def test_scheduler_start_and_stop(test_settings, clock):
    async def scenario():
        ctx = build_context(test_settings, clock=clock)
        ctx.db.init_schema()
        ctx.scheduler.start()
        running = all(task.running for task in ctx.scheduler.tasks)
        await ctx.scheduler.stop()
        stopped = not any(task.running for task in ctx.scheduler.tasks)
        ctx.close()
        return running, stopped

    assert asyncio.run(scenario()) == (True, True)
