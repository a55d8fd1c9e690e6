#!/usr/bin/env python3
"""
Maintenance Scheduler

Runs the periodic housekeeping jobs of a long-lived Feed Sentry process:

- DNS resolution cache sweep (every CACHE_CLEANUP_INTERVAL_SECONDS)
- Article retention cleanup (every ARTICLE_CLEANUP_INTERVAL_HOURS, and once
  at startup)
- Full feed sync (every SYNC_INTERVAL_MINUTES, when enabled)

A job that fails is logged and rescheduled; it never stops the loop.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from time import monotonic
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import config, get_logger
from telemetry import trace_span
from url_validator import URLValidator, get_validator

logger = get_logger("scheduler")


@dataclass
class PeriodicJob:
    """A named coroutine run every ``interval`` seconds."""
    name: str
    interval: float
    func: Callable[[], Awaitable[Any]]
    next_run: float = 0.0
    runs: int = 0
    failures: int = 0
    last_error: Optional[str] = None

    def is_due(self, now: float) -> bool:
        return now >= self.next_run


class MaintenanceScheduler:
    """Drives the periodic jobs on the running event loop.

    Args:
        fetcher: FeedFetcher with a started database; used for cleanup and sync.
        validator: Owner of the resolution cache to sweep.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(self, fetcher, validator: Optional[URLValidator] = None,
                 clock: Callable[[], float] = monotonic):
        self.fetcher = fetcher
        self.validator = validator or fetcher.validator or get_validator()
        self._clock = clock
        self.jobs: List[PeriodicJob] = self._build_jobs()

    def _build_jobs(self) -> List[PeriodicJob]:
        now = self._clock()
        jobs = [
            PeriodicJob(
                name="dns_cache_sweep",
                interval=config.CACHE_CLEANUP_INTERVAL_SECONDS,
                func=self.sweep_resolution_cache,
                next_run=now + config.CACHE_CLEANUP_INTERVAL_SECONDS,
            ),
            # Retention also runs once at startup
            PeriodicJob(
                name="article_cleanup",
                interval=config.ARTICLE_CLEANUP_INTERVAL_HOURS * 3600,
                func=self.cleanup_articles,
                next_run=now,
            ),
        ]
        if config.SYNC_INTERVAL_MINUTES > 0:
            jobs.append(PeriodicJob(
                name="feed_sync",
                interval=config.SYNC_INTERVAL_MINUTES * 60,
                func=self.sync_feeds,
                next_run=now,
            ))
        return jobs

    async def sweep_resolution_cache(self) -> int:
        return self.validator.clean_cache()

    async def cleanup_articles(self) -> int:
        return await self.fetcher.db.execute('cleanup_articles')

    async def sync_feeds(self) -> Dict[str, int]:
        await self.fetcher.register_configured_feeds()
        summary: Dict[str, int] = {}
        async for event in self.fetcher.sync_all_feeds():
            if event.type == "complete":
                summary = event.to_dict()
        return summary

    @trace_span(
        "scheduler.job",
        tracer_name="scheduler",
        attr_from_args=lambda self, job: {"job.name": job.name},
    )
    async def run_job(self, job: PeriodicJob) -> bool:
        """Run ``job`` once and schedule its next run; returns False on failure."""
        job.next_run = self._clock() + job.interval
        job.runs += 1
        try:
            result = await job.func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.failures += 1
            job.last_error = str(e)
            logger.error(f"Maintenance job {job.name} failed: {e}")
            return False
        job.last_error = None
        logger.debug(f"Maintenance job {job.name} finished: {result}")
        return True

    async def run_due_jobs(self) -> List[str]:
        """Run every job that is due; returns the names of the jobs run."""
        now = self._clock()
        ran = []
        for job in self.jobs:
            if job.is_due(now):
                await self.run_job(job)
                ran.append(job.name)
        return ran

    def seconds_until_next_job(self) -> float:
        now = self._clock()
        return max(0.0, min(job.next_run for job in self.jobs) - now)

    def get_schedule_status(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            'current_time': datetime.now(timezone.utc).isoformat(),
            'jobs': [
                {
                    'name': job.name,
                    'interval_seconds': job.interval,
                    'seconds_until_next_run': round(max(0.0, job.next_run - now), 1),
                    'runs': job.runs,
                    'failures': job.failures,
                    'last_error': job.last_error,
                }
                for job in self.jobs
            ],
        }

    @trace_span("scheduler.main_loop", tracer_name="scheduler")
    async def run_forever(self) -> None:
        """Run jobs as they come due until cancelled."""
        logger.info(f"Starting maintenance scheduler with jobs: {', '.join(job.name for job in self.jobs)}")
        while True:
            try:
                await self.run_due_jobs()
                # Small buffer so we don't wake up just before a job is due
                await asyncio.sleep(self.seconds_until_next_job() + 0.05)
            except asyncio.CancelledError:
                logger.info("Scheduler cancelled - shutting down")
                break
