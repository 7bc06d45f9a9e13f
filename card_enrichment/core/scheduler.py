"""Durable delayed-job scheduler.

Stage actions never sleep on a retry or call the next stage directly: they
ask the scheduler to "run this action after N milliseconds". Jobs are kept
in a queue (persisted to JSON for durability) and a SchedulerWorker
dispatches due jobs to registered action handlers.
"""

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Protocol

from card_enrichment.core.card import now_ms

logger = logging.getLogger(__name__)

Clock = Callable[[], int]
ActionHandler = Callable[..., Awaitable[Any]]


class Scheduler(Protocol):
    """Fire-and-forget durable enqueue."""

    async def run_after(self, delay_ms: int, action: str, args: dict[str, Any]) -> str: ...


@dataclass
class ScheduledJob:
    """One unit of delayed work.

    `claimed_at` is set while a worker runs the job and cleared if the run
    is abandoned.
    """

    action: str
    args: dict[str, Any]
    run_at: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: int = 0
    claimed_at: Optional[int] = None


class InMemoryJobQueue:
    """Job queue held in memory.

    Attributes:
        clock: Millisecond clock used to compute run_at.
    """

    def __init__(self, clock: Clock = now_ms):
        self.clock = clock
        self._jobs: dict[str, ScheduledJob] = {}

    def _persist(self) -> None:
        """Hook for durable subclasses."""

    async def run_after(self, delay_ms: int, action: str, args: dict[str, Any]) -> str:
        now = self.clock()
        job = ScheduledJob(
            action=action,
            args=dict(args),
            run_at=now + max(0, int(delay_ms)),
            created_at=now,
        )
        self._jobs[job.id] = job
        self._persist()
        logger.debug("Scheduled %s in %dms (job %s)", action, delay_ms, job.id)
        return job.id

    def due(self, now: int) -> list[ScheduledJob]:
        """Unclaimed jobs whose run_at has passed, oldest first."""
        ready = [j for j in self._jobs.values() if j.run_at <= now and j.claimed_at is None]
        return sorted(ready, key=lambda j: (j.run_at, j.created_at))

    def claim(self, job_id: str) -> Optional[ScheduledJob]:
        """Mark a job as running so due() stops returning it."""
        job = self._jobs.get(job_id)
        if job is None or job.claimed_at is not None:
            return None
        job.claimed_at = self.clock()
        self._persist()
        return job

    def release(self, job_id: str) -> None:
        """Drop a claim so the job is picked up again."""
        job = self._jobs.get(job_id)
        if job is not None and job.claimed_at is not None:
            job.claimed_at = None
            self._persist()

    def remove(self, job_id: str) -> None:
        if self._jobs.pop(job_id, None) is not None:
            self._persist()

    def pending(self) -> list[ScheduledJob]:
        return sorted(self._jobs.values(), key=lambda j: (j.run_at, j.created_at))

    def next_run_at(self) -> Optional[int]:
        return min(
            (j.run_at for j in self._jobs.values() if j.claimed_at is None), default=None
        )


class JsonJobQueue(InMemoryJobQueue):
    """Job queue persisted to a JSON file so pending work survives restarts.

    Attributes:
        path: Path to the JSON file.
    """

    def __init__(self, path: str | Path, clock: Clock = now_ms):
        super().__init__(clock)
        self.path = Path(path)
        self.load()

    def load(self) -> None:
        if not self.path.exists():
            self._jobs = {}
            return
        with open(self.path, encoding="utf-8") as f:
            state = json.load(f)
        self._jobs = {
            job["id"]: ScheduledJob(**job) for job in state.get("jobs", [])
        }
        # Claims left by a previous process belong to runs that never finished
        abandoned = [j for j in self._jobs.values() if j.claimed_at is not None]
        for job in abandoned:
            job.claimed_at = None
        if abandoned:
            logger.warning("Requeued %d jobs interrupted by a restart", len(abandoned))

    def _persist(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        state = {
            "jobs": [asdict(j) for j in self.pending()],
            "last_updated": datetime.now().isoformat(),
        }
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(state, f, indent=2, ensure_ascii=False)


class ActionRegistry:
    """Maps action names to coroutine handlers `handler(ctx, **args)`."""

    def __init__(self, handlers: Optional[dict[str, ActionHandler]] = None):
        self._handlers: dict[str, ActionHandler] = dict(handlers or {})

    def register(self, name: str, handler: ActionHandler) -> None:
        self._handlers[name] = handler

    def get(self, name: str) -> Optional[ActionHandler]:
        return self._handlers.get(name)

    def names(self) -> list[str]:
        return sorted(self._handlers)


class SchedulerWorker:
    """Dispatches due jobs to their handlers.

    Each due job is claimed and started as its own task, so a slow handler
    never delays the next poll. A job stays in the queue until its handler
    returns; if the process dies first, the claim is dropped on reload and
    the job runs again. Handlers therefore must tolerate being run twice.
    At most `max_concurrent` handlers run at once.

    Attributes:
        queue: Job queue to drain.
        registry: Action handlers.
        context: Object passed as first argument to every handler.
    """

    def __init__(
        self,
        queue: InMemoryJobQueue,
        registry: ActionRegistry,
        context: Any,
        *,
        max_concurrent: int = 5,
        poll_interval: float = 1.0,
    ):
        self.queue = queue
        self.registry = registry
        self.context = context
        self.poll_interval = poll_interval
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._tasks: set[asyncio.Task] = set()

    @property
    def running(self) -> int:
        """Number of dispatched jobs that have not finished."""
        return len(self._tasks)

    async def _dispatch(self, job: ScheduledJob) -> bool:
        handler = self.registry.get(job.action)
        if handler is None:
            logger.error("No handler registered for action %s", job.action, extra={"job_id": job.id})
            self.queue.remove(job.id)
            return False

        try:
            async with self._semaphore:
                await handler(self.context, **job.args)
        except asyncio.CancelledError:
            self.queue.release(job.id)
            raise
        except Exception:
            # Handlers are the error boundary; this only catches bugs.
            logger.exception("Action %s crashed", job.action, extra={"job_id": job.id})
            self.queue.remove(job.id)
            return False
        self.queue.remove(job.id)
        return True

    def _start_due(self) -> list[asyncio.Task]:
        started = []
        for job in self.queue.due(self.queue.clock()):
            self.queue.claim(job.id)
            task = asyncio.create_task(self._dispatch(job), name=f"job-{job.action}-{job.id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started.append(task)
        return started

    async def run_pending(self) -> int:
        """Run every job that is due now and wait for those jobs to finish.

        Returns:
            Number of jobs whose handler completed without raising.
        """
        tasks = self._start_due()
        if not tasks:
            return 0
        results = await asyncio.gather(*tasks)
        return sum(1 for ok in results if ok)

    async def drain(self, max_rounds: int = 100) -> int:
        """Keep running due jobs until none are left (or max_rounds)."""
        total = 0
        for _ in range(max_rounds):
            if not self.queue.due(self.queue.clock()):
                break
            total += await self.run_pending()
        return total

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Start due jobs every poll interval until `stop_event` is set.

        Jobs still running at shutdown are awaited before returning.
        """
        logger.info("Scheduler worker started (poll interval: %.2fs)", self.poll_interval)
        while not stop_event.is_set():
            self._start_due()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        if self._tasks:
            logger.info("Waiting for %d running jobs", len(self._tasks))
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("Scheduler worker stopped")
