"""
Batch Scheduler

In-process cron scheduler for the ETL jobs. Each registered job has a cron
expression and an async run function that receives the scheduled fire
time. A ticker loop checks due jobs every ``tick_seconds``.

A job never overlaps itself: a trigger that arrives while the previous run
is still in flight is skipped, logged and counted.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set

import structlog
from croniter import croniter
from prometheus_client import Counter, Histogram

from cityatlas_etl.config import get_settings
from cityatlas_etl.records import utcnow

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

SCHEDULER_RUNS_SKIPPED = Counter(
    "cityatlas_scheduler_runs_skipped_total",
    "Triggers skipped because the job was still running",
    ["job"],
)

SCHEDULER_RUN_ERRORS = Counter(
    "cityatlas_scheduler_run_errors_total",
    "Job runs that raised out of the job function",
    ["job"],
)

SCHEDULER_RUN_TIME = Histogram(
    "cityatlas_scheduler_run_seconds",
    "Wall time of scheduled job runs",
    ["job"],
)


JobRunner = Callable[[datetime], Awaitable[Any]]


@dataclass
class ScheduledJob:
    """A named job with its cron schedule and run state"""
    name: str
    cron: str
    run: JobRunner
    next_run: datetime
    running: bool = False
    last_scheduled_for: Optional[datetime] = None
    last_result: Any = None
    skipped_runs: int = 0


class EtlScheduler:
    """
    Cron-driven scheduler for async ETL jobs.

    Example:
        scheduler = EtlScheduler()
        scheduler.register("dimension_refresh", "0 2 * * *", jobs.refresh_dimensions)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        tick_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.tick_seconds = (
            tick_seconds if tick_seconds is not None
            else get_settings().etl.scheduler_tick_seconds
        )
        self._clock = clock
        self._jobs: Dict[str, ScheduledJob] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._ticker: Optional[asyncio.Task] = None
        self._running = False

    @property
    def jobs(self) -> Mapping[str, ScheduledJob]:
        return dict(self._jobs)

    @property
    def is_running(self) -> bool:
        return self._running

    def register(self, name: str, cron: str, run: JobRunner) -> ScheduledJob:
        """
        Register a job.

        Raises:
            ValueError: Invalid cron expression or duplicate job name
        """
        if not croniter.is_valid(cron):
            raise ValueError(f"Invalid cron expression for job {name!r}: {cron!r}")
        if name in self._jobs:
            raise ValueError(f"Job already registered: {name!r}")

        job = ScheduledJob(name=name, cron=cron, run=run, next_run=croniter(cron, self._clock()).get_next(datetime))
        self._jobs[name] = job
        logger.info("Registered job", job=name, cron=cron, next_run=job.next_run.isoformat())
        return job

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def _launch(self, job: ScheduledJob, scheduled_for: datetime) -> Optional[asyncio.Task]:
        if job.running:
            job.skipped_runs += 1
            SCHEDULER_RUNS_SKIPPED.labels(job=job.name).inc()
            logger.warning(
                "Job still running, skipping trigger",
                job=job.name,
                scheduled_for=scheduled_for.isoformat(),
            )
            return None

        job.running = True
        job.last_scheduled_for = scheduled_for
        task = asyncio.create_task(self._execute(job, scheduled_for), name=f"etl-job-{job.name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _execute(self, job: ScheduledJob, scheduled_for: datetime) -> Any:
        start = time.perf_counter()
        logger.info("Running job", job=job.name, scheduled_for=scheduled_for.isoformat())
        try:
            job.last_result = await job.run(scheduled_for)
            return job.last_result
        except Exception as e:
            job.last_result = None
            SCHEDULER_RUN_ERRORS.labels(job=job.name).inc()
            logger.error("Job raised", job=job.name, error=str(e), error_type=type(e).__name__)
            return None
        finally:
            job.running = False
            SCHEDULER_RUN_TIME.labels(job=job.name).observe(time.perf_counter() - start)

    def run_pending(self, now: Optional[datetime] = None) -> List[asyncio.Task]:
        """
        Launch every job whose next fire time has passed.

        Missed fire times are coalesced into one run for the latest of them,
        so the run covers the most recent window; the events job rebuilds
        its whole day from that fire. The next fire time is the first one
        after ``now``.
        """
        now = now or self._clock()
        launched = []
        for job in self._jobs.values():
            if job.next_run > now:
                continue

            fires = croniter(job.cron, job.next_run)
            scheduled_for, missed = job.next_run, 0
            upcoming = fires.get_next(datetime)
            while upcoming <= now:
                scheduled_for, missed = upcoming, missed + 1
                upcoming = fires.get_next(datetime)
            if missed:
                logger.warning(
                    "Missed fire times coalesced",
                    job=job.name,
                    first_missed=job.next_run.isoformat(),
                    scheduled_for=scheduled_for.isoformat(),
                    missed=missed,
                )
            job.next_run = upcoming

            task = self._launch(job, scheduled_for)
            if task is not None:
                launched.append(task)
        return launched

    async def trigger(self, name: str, scheduled_for: Optional[datetime] = None) -> Any:
        """
        Run a job on demand and wait for it.

        Returns the job result, or None when the job was already running.

        Raises:
            KeyError: Unknown job name
        """
        if name not in self._jobs:
            raise KeyError(f"Unknown job: {name!r}")
        task = self._launch(self._jobs[name], scheduled_for or self._clock())
        if task is None:
            return None
        return await task

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def run_forever(self) -> None:
        while self._running:
            try:
                self.run_pending()
            except Exception as e:
                logger.error("Scheduler tick failed", error=str(e))
            await asyncio.sleep(self.tick_seconds)

    def start(self) -> None:
        if self._running:
            logger.warning("Scheduler already running")
            return
        self._running = True
        self._ticker = asyncio.create_task(self.run_forever(), name="etl-scheduler")
        logger.info("Scheduler started", jobs=list(self._jobs), tick_seconds=self.tick_seconds)

    async def stop(self, wait: bool = True) -> None:
        """Stop the ticker; in-flight runs are awaited unless ``wait`` is False"""
        self._running = False
        if self._ticker is not None:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None

        in_flight = list(self._tasks)
        if in_flight:
            if wait:
                logger.info("Waiting for running jobs", jobs=[t.get_name() for t in in_flight])
                await asyncio.gather(*in_flight, return_exceptions=True)
            else:
                for task in in_flight:
                    task.cancel()
        logger.info("Scheduler stopped")
