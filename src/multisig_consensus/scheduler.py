"""Background job scheduler for consensus maintenance (APScheduler)."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .logging import get_logger

logger = get_logger("multisig_consensus.scheduler")

JobCallable = Callable[[], Awaitable[object] | object]


class ConsensusScheduler:
    """AsyncIOScheduler with at-most-one-instance, coalescing job defaults."""

    def __init__(self, timezone_name: str = "UTC", misfire_grace_seconds: int = 60 * 5):
        self._timezone = timezone_name
        self._started = False
        self._scheduler = AsyncIOScheduler(
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": misfire_grace_seconds,
            },
            timezone=timezone_name,
        )

    def add_interval_job(
        self,
        func: JobCallable,
        job_id: str,
        *,
        seconds: int = 300,
        run_immediately: bool = False,
        **kwargs: Any,
    ) -> None:
        """Register (or replace) an interval job.

        Args:
            run_immediately: Fire once as soon as the scheduler is running
        """
        if run_immediately:
            kwargs.setdefault("next_run_time", datetime.now(timezone.utc))
        # Jobs added before start() are queued, not replaced
        if self.has_job(job_id):
            self._scheduler.remove_job(job_id)
        self._scheduler.add_job(
            func,
            "interval",
            id=job_id,
            seconds=seconds,
            replace_existing=True,
            **kwargs,
        )
        logger.info("Registered interval job: %s (every %ss)", job_id, seconds)

    def remove_job(self, job_id: str) -> None:
        if self._scheduler.get_job(job_id) is not None:
            self._scheduler.remove_job(job_id)
            logger.info("Removed job: %s", job_id)

    def has_job(self, job_id: str) -> bool:
        return self._scheduler.get_job(job_id) is not None

    def next_run_time(self, job_id: str) -> Optional[datetime]:
        job = self._scheduler.get_job(job_id)
        return job.next_run_time if job is not None else None

    async def start(self) -> None:
        """Start the scheduler (must be called from a running event loop)."""
        if self._started:
            return
        self._scheduler.start()
        self._started = True
        logger.info("Scheduler started")

    async def shutdown(self, wait: bool = True) -> None:
        if not self._started:
            return
        self._scheduler.shutdown(wait=wait)
        self._started = False
        logger.info("Scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._started and bool(self._scheduler.running)


__all__ = ["ConsensusScheduler", "JobCallable"]
