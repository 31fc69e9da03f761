"""Tests for the background sweep scheduler."""

import asyncio

from authcore.service.sweeper import SweepJob, SweepScheduler


def _counter():
    calls = []

    def job():
        calls.append(1)
        return len(calls)

    return calls, job


async def test_jobs_run_only_when_due(clock):
    calls, job = _counter()
    scheduler = SweepScheduler([SweepJob("tokens", 60, job)], clock=clock)

    assert await scheduler.run_due(now=1000.0) == []
    assert await scheduler.run_due(now=1059.0) == []
    assert await scheduler.run_due(now=1060.0) == ["tokens"]
    assert await scheduler.run_due(now=1100.0) == []
    assert await scheduler.run_due(now=1120.0) == ["tokens"]
    assert len(calls) == 2


async def test_jobs_keep_independent_intervals(clock):
    fast_calls, fast = _counter()
    slow_calls, slow = _counter()
    scheduler = SweepScheduler(
        [SweepJob("fast", 10, fast), SweepJob("slow", 30, slow)], clock=clock
    )

    await scheduler.run_due(now=0.0)
    for tick in range(10, 70, 10):
        await scheduler.run_due(now=float(tick))

    assert len(fast_calls) == 6
    assert len(slow_calls) == 2


async def test_failing_job_does_not_stop_others(clock):
    calls, job = _counter()

    def broken():
        raise RuntimeError("store unavailable")

    scheduler = SweepScheduler(
        [SweepJob("broken", 10, broken), SweepJob("ok", 10, job)], clock=clock
    )

    await scheduler.run_due(now=0.0)
    ran = await scheduler.run_due(now=10.0)

    assert ran == ["broken", "ok"]
    assert len(calls) == 1
    # The failed job is retried at its next interval
    assert await scheduler.run_due(now=20.0) == ["broken", "ok"]


async def test_run_all_returns_results(clock):
    _, job = _counter()
    scheduler = SweepScheduler(
        [SweepJob("count", 3600, job), SweepJob("none", 3600, lambda: None)], clock=clock
    )

    results = await scheduler.run_all()

    assert results == {"count": 1, "none": None}


async def test_start_and_stop(clock):
    calls, job = _counter()
    scheduler = SweepScheduler([SweepJob("tokens", 3600, job)], clock=clock, tick_seconds=0.01)

    await scheduler.start()
    assert scheduler.running is True
    await asyncio.sleep(0.05)
    await scheduler.stop()

    assert scheduler.running is False
    # The clock never advanced, so nothing was due
    assert calls == []


async def test_start_is_idempotent(clock):
    scheduler = SweepScheduler([SweepJob("noop", 3600, lambda: None)], clock=clock, tick_seconds=0.01)
    await scheduler.start()
    task = scheduler._task
    await scheduler.start()
    assert scheduler._task is task
    await scheduler.stop()


async def test_loop_runs_due_jobs(clock):
    calls, job = _counter()
    scheduler = SweepScheduler([SweepJob("tokens", 60, job)], clock=clock, tick_seconds=0.01)

    await scheduler.start()
    clock.advance(61)
    for _ in range(100):
        if calls:
            break
        await asyncio.sleep(0.01)
    await scheduler.stop()

    assert len(calls) == 1
