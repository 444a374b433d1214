import contextlib
import inspect
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from shesurvived.repository import parse_timestamp, utc_now

logger = logging.getLogger("shesurvived.timers")


def build_scheduler() -> AsyncIOScheduler:
    """Scheduler for every periodic job in the process. Start it from inside the running loop."""
    return AsyncIOScheduler(job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None})


class PeriodicTimer:
    """Run ``callback`` every ``interval`` seconds as an interval job on ``scheduler``.

    The callback may be sync or async; it always runs on the event loop.
    Returning ``False`` removes the job. Always pair ``start()`` with
    ``stop()``, or use ``async with``.
    """

    def __init__(self, scheduler: AsyncIOScheduler, interval: float, callback: Callable[[], Any], name: str = "timer"):
        self.scheduler = scheduler
        self.interval = interval
        self.callback = callback
        self.name = name
        self.job = None

    @property
    def running(self) -> bool:
        return self.job is not None

    def start(self):
        if self.running:
            return
        self.job = self.scheduler.add_job(self._tick, "interval", seconds=self.interval, name=self.name)

    async def _tick(self):
        try:
            result = self.callback()
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            logger.exception(f"{self.name} tick failed")
            return
        if result is False:
            logger.debug(f"{self.name} finished")
            self._remove()

    def _remove(self):
        job, self.job = self.job, None
        if job is not None:
            # already gone when the scheduler was shut down first
            with contextlib.suppress(JobLookupError):
                job.remove()

    async def stop(self):
        self._remove()

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()


class ElapsedClock:
    """Wall-clock time since an alert's stamped creation time.

    Derived from the timestamp rather than counted, so it survives reloads.
    """

    def __init__(self, now: Callable[[], datetime] = utc_now):
        self._now = now
        self.started_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self.started_at is not None

    def start(self, timestamp: Optional[str] = None):
        self.started_at = parse_timestamp(timestamp) if timestamp else self._now()

    def stop(self):
        self.started_at = None

    @property
    def seconds(self) -> int:
        if self.started_at is None:
            return 0
        return max(0, int((self._now() - self.started_at).total_seconds()))
