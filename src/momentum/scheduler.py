"""
Deferred job queue with an injectable clock.

Hedge buys schedule their resting sell orders a few seconds later, once the
bought tokens have settled in the wallet. Jobs run independently of the
monitoring loop; tests drive them with a ManualClock instead of sleeping.
"""

import asyncio
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Protocol

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[None]]


class Clock(Protocol):
    def now(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall clock backed by time.time and asyncio.sleep."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualClock:
    """Clock that only moves when advanced; sleep advances it instantly."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now += seconds
        await asyncio.sleep(0)


@dataclass(order=True)
class _ScheduledJob:
    due: float
    seq: int
    name: str = field(compare=False)
    job: Job = field(compare=False)


class DeferredJobQueue:
    """
    Min-heap of jobs keyed by due time.

    Example:
        queue = DeferredJobQueue(SystemClock())
        queue.schedule(7.0, place_hedge_sells, name="hedge-sells")
        asyncio.create_task(queue.run_forever())
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._heap: list[_ScheduledJob] = []
        self._seq = itertools.count()
        self.completed = 0
        self.failed = 0

    @property
    def pending_count(self) -> int:
        return len(self._heap)

    def schedule(self, delay: float, job: Job, name: str = "job") -> float:
        """
        Schedule a job to run after `delay` seconds.

        Returns:
            Due time on the queue's clock
        """
        due = self.clock.now() + max(0.0, delay)
        heapq.heappush(self._heap, _ScheduledJob(due, next(self._seq), name, job))
        logger.debug(f"Scheduled {name} in {delay:.1f}s")
        return due

    async def run_due(self) -> int:
        """
        Run every job whose due time has passed, concurrently.

        A failing job is logged and counted; it does not affect the others.

        Returns:
            Number of jobs started
        """
        now = self.clock.now()
        due: list[_ScheduledJob] = []
        while self._heap and self._heap[0].due <= now:
            due.append(heapq.heappop(self._heap))
        if not due:
            return 0

        results = await asyncio.gather(
            *(item.job() for item in due), return_exceptions=True
        )
        for item, result in zip(due, results):
            if isinstance(result, Exception):
                self.failed += 1
                logger.error(f"Deferred job {item.name} failed: {result}")
            else:
                self.completed += 1
        return len(due)

    async def run_forever(self, poll_interval: float = 0.25) -> None:
        """Poll for due jobs until cancelled."""
        while True:
            await self.run_due()
            await self.clock.sleep(poll_interval)
