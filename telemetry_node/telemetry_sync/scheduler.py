"""
Periodic task scheduler
Every schedule is a long-lived asyncio task looping on run -> interruptible wait,
so a slow or failing task never delays the other loops.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from dateutil.relativedelta import relativedelta

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 5.0


def seconds_until_daily(hour: int, now: datetime) -> float:
    """Seconds from now to the next hh:00:00 (tomorrow if already past)."""
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += relativedelta(days=1)
    return (target - now).total_seconds()


def seconds_until_month_start(hour: int, now: datetime) -> float:
    """Seconds from now to hh:00 on the 1st of the next month (or this month's 1st if still ahead)."""
    target = now.replace(day=1, hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += relativedelta(months=1)
    return (target - now).total_seconds()


@dataclass
class ScheduledLoop:
    name: str
    period: float
    task: Callable[[], Awaitable[Any]]
    initial_delay: float = 0.0
    runs: int = 0
    failures: int = 0
    last_duration: float = 0.0
    last_error: Optional[str] = None


class Scheduler:
    """
    Owns N independent loops.

    Task exceptions are logged and counted; the loop keeps its schedule.
    stop() lets in-flight runs finish within the grace period, then cancels.
    """

    def __init__(self, shutdown_event: Optional[asyncio.Event] = None):
        self._shutdown_event = shutdown_event or asyncio.Event()
        self._loops: Dict[str, ScheduledLoop] = {}
        self._tasks: List[asyncio.Task] = []
        self.running = False

    def schedule(
        self,
        name: str,
        period: float,
        task: Callable[[], Awaitable[Any]],
        initial_delay: float = 0.0,
    ) -> ScheduledLoop:
        """
        Register a loop.

        Args:
            name: Unique loop name (also the asyncio task name)
            period: Seconds between the end of one run and the start of the next
            task: Coroutine function invoked on every fire
            initial_delay: Seconds before the first fire
        """
        if name in self._loops:
            raise ValueError(f"Loop '{name}' is already scheduled")
        if period <= 0:
            raise ValueError(f"Loop '{name}' needs a positive period")
        loop = ScheduledLoop(name=name, period=period, task=task, initial_delay=max(initial_delay, 0.0))
        self._loops[name] = loop
        if self.running:
            self._tasks.append(asyncio.create_task(self._run_loop(loop), name=name))
        return loop

    @property
    def loops(self) -> List[ScheduledLoop]:
        return list(self._loops.values())

    def start(self):
        """Spawn one task per registered loop"""
        if self.running:
            return
        self.running = True
        self._shutdown_event.clear()
        self._tasks = [
            asyncio.create_task(self._run_loop(loop), name=loop.name)
            for loop in self._loops.values()
        ]
        logger.info(f"Scheduler started with {len(self._tasks)} loops: {', '.join(self._loops)}")

    async def wait(self):
        """Block until shutdown is requested"""
        await self._shutdown_event.wait()

    async def stop(self, grace_period: float = DEFAULT_GRACE_PERIOD):
        """Signal every loop to stop, wait up to grace_period, then cancel stragglers."""
        logger.info("Stopping scheduler...")
        self.running = False
        self._shutdown_event.set()

        pending = [t for t in self._tasks if not t.done()]
        if pending:
            _, pending = await asyncio.wait(pending, timeout=grace_period)
        if pending:
            logger.warning(
                f"Cancelling {len(pending)} loops still running after {grace_period}s: "
                f"{', '.join(t.get_name() for t in pending)}"
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("Scheduler stopped")

    async def _run_loop(self, loop: ScheduledLoop):
        logger.info(
            f"Loop '{loop.name}' started (period: {loop.period:.0f}s, "
            f"first run in {loop.initial_delay:.0f}s)"
        )
        if loop.initial_delay and await self._interruptible_wait(loop.initial_delay):
            logger.info(f"Loop '{loop.name}' stopped")
            return

        while not self._shutdown_event.is_set():
            await self._execute_safely(loop)
            if await self._interruptible_wait(loop.period):
                break

        logger.info(f"Loop '{loop.name}' stopped")

    async def _execute_safely(self, loop: ScheduledLoop):
        start = time.monotonic()
        try:
            await loop.task()
            loop.last_error = None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            loop.failures += 1
            loop.last_error = str(e)
            logger.error(f"Scheduled task '{loop.name}' failed: {e}", exc_info=True)
        finally:
            loop.runs += 1
            loop.last_duration = time.monotonic() - start

    async def _interruptible_wait(self, seconds: float) -> bool:
        """
        Wait for specified seconds or until shutdown.
        Returns True if shutdown was requested.
        """
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    def get_stats(self) -> Dict[str, dict]:
        return {
            loop.name: {
                "period_seconds": loop.period,
                "runs": loop.runs,
                "failures": loop.failures,
                "last_duration_seconds": loop.last_duration,
                "last_error": loop.last_error,
            }
            for loop in self._loops.values()
        }
