from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from conftest import TAIPEI
from telemetry_node.telemetry_sync.scheduler import Scheduler, seconds_until_daily, seconds_until_month_start


@pytest.mark.asyncio
async def test_failing_loop_does_not_affect_others() -> None:
    scheduler = Scheduler()
    ticks: list[int] = []

    async def healthy() -> None:
        ticks.append(1)

    async def broken() -> None:
        raise RuntimeError("vendor exploded")

    scheduler.schedule("healthy", 0.01, healthy)
    scheduler.schedule("broken", 0.01, broken)
    scheduler.start()
    await asyncio.sleep(0.1)
    await scheduler.stop(grace_period=1.0)

    stats = scheduler.get_stats()
    assert len(ticks) >= 2
    assert stats["broken"]["failures"] >= 2
    assert stats["broken"]["last_error"] == "vendor exploded"
    assert stats["healthy"]["failures"] == 0


@pytest.mark.asyncio
async def test_stop_lets_in_flight_run_finish_within_grace() -> None:
    scheduler = Scheduler()
    finished = asyncio.Event()
    started = asyncio.Event()

    async def slow() -> None:
        started.set()
        await asyncio.sleep(0.05)
        finished.set()

    scheduler.schedule("slow", 60, slow)
    scheduler.start()
    await started.wait()
    await scheduler.stop(grace_period=1.0)

    assert finished.is_set()
    assert scheduler.get_stats()["slow"]["runs"] == 1


@pytest.mark.asyncio
async def test_stop_cancels_runs_past_grace() -> None:
    scheduler = Scheduler()
    started = asyncio.Event()
    cancelled = asyncio.Event()

    async def stuck() -> None:
        started.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    scheduler.schedule("stuck", 60, stuck)
    scheduler.start()
    await started.wait()
    await asyncio.wait_for(scheduler.stop(grace_period=0.05), timeout=2)

    assert cancelled.is_set()


@pytest.mark.asyncio
async def test_shutdown_during_initial_delay_skips_first_run() -> None:
    shutdown = asyncio.Event()
    scheduler = Scheduler(shutdown)
    runs: list[int] = []

    async def task() -> None:
        runs.append(1)

    scheduler.schedule("later", 60, task, initial_delay=30)
    scheduler.start()
    await asyncio.sleep(0)
    shutdown.set()
    await asyncio.wait_for(scheduler.stop(grace_period=1.0), timeout=2)

    assert runs == []


def test_schedule_rejects_duplicates_and_bad_periods() -> None:
    scheduler = Scheduler()

    async def task() -> None:
        return None

    scheduler.schedule("a", 1, task)
    with pytest.raises(ValueError):
        scheduler.schedule("a", 1, task)
    with pytest.raises(ValueError):
        scheduler.schedule("b", 0, task)


def test_seconds_until_daily() -> None:
    assert seconds_until_daily(2, datetime(2024, 5, 6, 1, 30, tzinfo=TAIPEI)) == 30 * 60
    assert seconds_until_daily(2, datetime(2024, 5, 6, 2, 0, tzinfo=TAIPEI)) == 24 * 3600
    assert seconds_until_daily(2, datetime(2024, 5, 6, 10, 0, tzinfo=TAIPEI)) == 16 * 3600


def test_seconds_until_month_start() -> None:
    assert seconds_until_month_start(3, datetime(2024, 5, 1, 2, 0, tzinfo=TAIPEI)) == 3600
    assert seconds_until_month_start(3, datetime(2024, 5, 31, 3, 0, tzinfo=TAIPEI)) == 24 * 3600
    assert seconds_until_month_start(3, datetime(2024, 12, 15, 3, 0, tzinfo=TAIPEI)) == 17 * 24 * 3600
