from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from authcore.logging import get_logger
from authcore.service.clock import Clock, SystemClock

logger = get_logger(__name__)


@dataclass(frozen=True)
class SweepJob:
    name: str
    interval_seconds: float
    func: Callable[[], Any]


class SweepScheduler:
    """Background loop running periodic maintenance jobs off the request path.

    Each job runs in a worker thread when its interval has elapsed. A failing
    job is logged and retried at its next interval; it never stops the loop.
    """

    def __init__(
        self,
        jobs: Sequence[SweepJob],
        *,
        clock: Optional[Clock] = None,
        tick_seconds: Optional[float] = None,
    ) -> None:
        self.jobs: List[SweepJob] = list(jobs)
        self.clock = clock or SystemClock()
        intervals = [job.interval_seconds for job in self.jobs] or [60.0]
        self.tick_seconds = tick_seconds or max(1.0, min(min(intervals), 60.0))
        self._next_due: Dict[str, float] = {}
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _schedule_from(self, now: float) -> None:
        for job in self.jobs:
            self._next_due[job.name] = now + job.interval_seconds

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._schedule_from(self.clock.monotonic())
        self._task = asyncio.create_task(self._run())
        logger.info("sweep_scheduler_started", jobs=[job.name for job in self.jobs])

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        logger.info("sweep_scheduler_stopped")

    async def run_due(self, now: Optional[float] = None) -> List[str]:
        current = self.clock.monotonic() if now is None else now
        if not self._next_due:
            self._schedule_from(current)
        ran: List[str] = []
        for job in self.jobs:
            if current >= self._next_due.get(job.name, current):
                await self._run_job(job)
                self._next_due[job.name] = current + job.interval_seconds
                ran.append(job.name)
        return ran

    async def run_all(self) -> Dict[str, Any]:
        results: Dict[str, Any] = {}
        for job in self.jobs:
            results[job.name] = await self._run_job(job)
        return results

    async def _run_job(self, job: SweepJob) -> Any:
        try:
            result = await asyncio.to_thread(job.func)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("sweep_failed", job=job.name, error=str(exc))
            return None
        logger.debug("sweep_completed", job=job.name, result=result)
        return result

    async def _run(self) -> None:
        assert self._stop_event is not None
        try:
            while not self._stop_event.is_set():
                await self.run_due()
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_seconds)
        except asyncio.CancelledError:
            logger.info("sweep_scheduler_cancelled")
