"""
Periodic Sweeper - ניקוי תקופתי של מפות בזיכרון

כל job רץ ב-asyncio task משלו בקצב שהוגדר לו. המפות שמנוקות (dedup,
rate limit, cooldown, אחסון הגיבוי) חיות בתוך התהליך, ולכן הניקוי רץ
באותו event loop ולא ב-worker חיצוני.

חריגה ב-job נרשמת ללוג והלולאה ממשיכה לסבב הבא.
"""
import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Optional

from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class SweepJob:
    name: str
    func: Callable[[], Any]
    interval_seconds: float
    runs: int = 0
    failures: int = 0


class PeriodicSweeper:
    def __init__(self) -> None:
        self._jobs: dict[str, SweepJob] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def jobs(self) -> dict[str, SweepJob]:
        return dict(self._jobs)

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def register(self, name: str, func: Callable[[], Any], interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"Sweep interval for {name} must be positive")
        if self._tasks:
            raise RuntimeError("Cannot register sweep jobs while the sweeper is running")
        self._jobs[name] = SweepJob(name=name, func=func, interval_seconds=interval_seconds)

    async def _run_job(self, job: SweepJob) -> Optional[Any]:
        try:
            result = job.func()
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            job.failures += 1
            logger.error("Sweep job failed", extra_data={"job": job.name}, exc_info=True)
            return None
        job.runs += 1
        logger.debug("Sweep job completed", extra_data={"job": job.name, "result": result})
        return result

    async def run_once(self) -> dict[str, Any]:
        """הרצה אחת של כל ה-jobs - לבדיקות ולהפעלה ידנית"""
        return {name: await self._run_job(job) for name, job in self._jobs.items()}

    async def _loop(self, job: SweepJob) -> None:
        while True:
            await asyncio.sleep(job.interval_seconds)
            await self._run_job(job)

    def start(self) -> None:
        if self._tasks:
            return
        for name, job in self._jobs.items():
            self._tasks[name] = asyncio.create_task(self._loop(job), name=f"sweep:{name}")
        logger.info(
            "Periodic sweeper started",
            extra_data={"jobs": {name: job.interval_seconds for name, job in self._jobs.items()}},
        )

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("Periodic sweeper stopped")
