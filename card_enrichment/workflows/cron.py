"""Periodic job triggers.

CronRunner does not run job bodies itself: when a job is due it enqueues
the job's action on the scheduler, so periodic work goes through the same
durable queue and worker as every stage action.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from card_enrichment.core.card import now_ms
from card_enrichment.core.config import Config
from card_enrichment.core.scheduler import Clock, Scheduler
from card_enrichment.workflows.ai_backfill import RUN_AI_BACKFILL
from card_enrichment.workflows.cleanup import CLEANUP_DELETED_CARDS
from card_enrichment.workflows.pipeline import REQUEUE_STALE_STAGES

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000
STALE_SWEEP_INTERVAL_HOURS = 0.25


class Schedule(Protocol):
    def next_after(self, now: int) -> int: ...


@dataclass(frozen=True)
class DailyAt:
    """Once a day at hour:minute UTC."""

    hour: int
    minute: int = 0

    def next_after(self, now: int) -> int:
        current = datetime.fromtimestamp(now / 1000, tz=timezone.utc)
        candidate = current.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= current:
            candidate += timedelta(days=1)
        return int(candidate.timestamp() * 1000)


@dataclass(frozen=True)
class Every:
    """Fixed interval, first run one interval after start."""

    hours: float

    def next_after(self, now: int) -> int:
        return now + int(self.hours * HOUR_MS)


@dataclass
class CronJob:
    name: str
    action: str
    schedule: Schedule
    args: dict[str, Any] = field(default_factory=dict)
    next_run_at: Optional[int] = None


class CronRunner:
    """Enqueues periodic actions when their schedule comes due.

    Attributes:
        scheduler: Queue receiving the periodic actions.
        jobs: Periodic jobs to trigger.
        clock: Millisecond clock.
    """

    def __init__(self, scheduler: Scheduler, jobs: list[CronJob], clock: Clock = now_ms):
        self.scheduler = scheduler
        self.jobs = jobs
        self.clock = clock
        now = clock()
        for job in jobs:
            if job.next_run_at is None:
                job.next_run_at = job.schedule.next_after(now)

    async def tick(self) -> list[str]:
        """Enqueue every job that is due.

        Returns:
            Names of the jobs enqueued.
        """
        now = self.clock()
        fired = []
        for job in self.jobs:
            if job.next_run_at is not None and job.next_run_at <= now:
                await self.scheduler.run_after(0, job.action, dict(job.args))
                job.next_run_at = job.schedule.next_after(now)
                fired.append(job.name)
                logger.info(
                    "Cron job %s enqueued, next run at %s",
                    job.name,
                    datetime.fromtimestamp(job.next_run_at / 1000, tz=timezone.utc).isoformat(),
                )
        return fired

    async def run_forever(self, stop_event: asyncio.Event, interval: float = 30.0) -> None:
        logger.info("Cron runner started with %d jobs", len(self.jobs))
        while not stop_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Cron runner stopped")


def default_cron_jobs(config: Config) -> list[CronJob]:
    """Built-in periodic jobs, timed from configuration."""
    return [
        CronJob(
            name="cleanup-deleted-cards",
            action=CLEANUP_DELETED_CARDS,
            schedule=DailyAt(hour=config.cleanup_hour_utc),
        ),
        CronJob(
            name="ai-backfill",
            action=RUN_AI_BACKFILL,
            schedule=Every(hours=config.ai_backfill_interval_hours),
        ),
        CronJob(
            name="requeue-stale-stages",
            action=REQUEUE_STALE_STAGES,
            schedule=Every(hours=STALE_SWEEP_INTERVAL_HOURS),
        ),
    ]
