"""
ETL Jobs

The three batch jobs of the warehouse:

- refresh_dimensions: SCD2 refresh of dim_city from the cities table
- snapshot_metrics:   hourly metrics window into fact_city_metrics
- aggregate_events:   15 minute events window, rebuilt per day into fact_user_events_daily

Every run gets its own batch id, runs inside one database transaction and
reports a JobResult. Exceptions never escape a job; they are logged with the
batch id and reported as FAILED.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import AsyncContextManager, Awaitable, Callable, List, Optional

import structlog
from prometheus_client import Counter, Histogram
from sqlalchemy.ext.asyncio import AsyncSession

from cityatlas_etl.config import get_settings
from cityatlas_etl.config.logging import batch_context
from cityatlas_etl.config.settings import EtlSettings
from cityatlas_etl.database.connection import get_db
from cityatlas_etl.database.repository import WarehouseRepository
from cityatlas_etl.records import new_batch_id, utcnow
from cityatlas_etl.transformation.dimensions import DimensionChangeSet, DimensionLoader
from cityatlas_etl.transformation.transformers import ETLTransformer, TransformResult
from .scheduler import EtlScheduler

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

ETL_JOB_RUNS = Counter(
    "cityatlas_etl_job_runs_total",
    "ETL job runs by outcome",
    ["job", "status"],
)

ETL_JOB_DURATION = Histogram(
    "cityatlas_etl_job_duration_seconds",
    "ETL job duration",
    ["job"],
)

ETL_RECORDS_LOADED = Counter(
    "cityatlas_etl_records_loaded_total",
    "Rows written to the warehouse by ETL jobs",
    ["job"],
)


class EtlJobError(Exception):
    """A job step failed and the run must be rolled back"""


class JobStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class JobResult:
    """Outcome of one job run"""
    job_name: str
    batch_id: str
    started_at: datetime
    status: JobStatus = JobStatus.RUNNING
    completed_at: Optional[datetime] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    records_extracted: int = 0
    records_loaded: int = 0
    records_rejected: int = 0
    grains_skipped: int = 0
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.COMPLETED


SessionScope = Callable[[], AsyncContextManager[AsyncSession]]
JobBody = Callable[[WarehouseRepository, JobResult], Awaitable[None]]

DIMENSION_REFRESH = "dimension_refresh"
METRICS_SNAPSHOT = "metrics_snapshot"
EVENTS_AGGREGATION = "events_aggregation"


class EtlJobs:
    """
    Batch ETL jobs over the warehouse.

    Example:
        jobs = EtlJobs()
        result = await jobs.snapshot_metrics(datetime(2025, 1, 15, 10, 0))
    """

    def __init__(
        self,
        session_scope: SessionScope = get_db,
        transformer: Optional[ETLTransformer] = None,
        dimension_loader: Optional[DimensionLoader] = None,
        settings: Optional[EtlSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_scope = session_scope
        self.transformer = transformer or ETLTransformer()
        self.dimension_loader = dimension_loader or DimensionLoader()
        self.settings = settings or get_settings().etl
        self._clock = clock

    async def _run(self, job_name: str, body: JobBody, window_start=None, window_end=None) -> JobResult:
        result = JobResult(
            job_name=job_name,
            batch_id=new_batch_id("ETL", self._clock()),
            started_at=self._clock(),
            window_start=window_start,
            window_end=window_end,
        )
        with batch_context(job_name, result.batch_id):
            logger.info(
                "ETL job started",
                window_start=window_start.isoformat() if window_start else None,
                window_end=window_end.isoformat() if window_end else None,
            )

            start = time.perf_counter()
            try:
                async with self._session_scope() as db:
                    await body(WarehouseRepository(db), result)
                result.status = JobStatus.COMPLETED
            except Exception as e:
                result.status = JobStatus.FAILED
                result.error = str(e)
                logger.error("ETL job failed", error=str(e), error_type=type(e).__name__)
            finally:
                result.completed_at = self._clock()
                ETL_JOB_DURATION.labels(job=job_name).observe(time.perf_counter() - start)
                ETL_JOB_RUNS.labels(job=job_name, status=result.status.value).inc()

            if result.succeeded:
                ETL_RECORDS_LOADED.labels(job=job_name).inc(result.records_loaded)
                logger.info(
                    "ETL job completed",
                    extracted=result.records_extracted,
                    loaded=result.records_loaded,
                    rejected=result.records_rejected,
                    skipped_grains=result.grains_skipped,
                    duration_seconds=round(result.duration_seconds, 3),
                )
        return result

    @staticmethod
    def _check_transform(transform: TransformResult, result: JobResult) -> None:
        result.records_rejected = transform.rows_dropped
        result.grains_skipped = len(transform.skipped)
        if transform.errors:
            raise EtlJobError("; ".join(transform.errors))

    # =========================================================================
    # DIMENSION REFRESH
    # =========================================================================

    async def refresh_dimensions(self, scheduled_for: Optional[datetime] = None) -> JobResult:
        """Diff source cities against dim_city and apply the SCD2 changes"""
        today = (scheduled_for or self._clock()).date()

        async def body(repo: WarehouseRepository, result: JobResult) -> None:
            cities = await repo.find_all_cities()
            result.records_extracted = len(cities)

            current = await repo.find_current_dim_cities()
            if not current:
                changes = DimensionChangeSet(inserts=self.dimension_loader.build_initial_dim_city_load(cities, today))
            else:
                changes = self.dimension_loader.detect_changes(current, cities, today)

            if not changes.has_changes:
                logger.info("City dimension up to date", batch_id=result.batch_id, cities=len(cities))
                return
            result.records_loaded = await repo.apply_dimension_changes(changes)

        return await self._run(DIMENSION_REFRESH, body)

    # =========================================================================
    # METRICS SNAPSHOT
    # =========================================================================

    async def snapshot_metrics(self, scheduled_for: Optional[datetime] = None) -> JobResult:
        """Load metrics recorded in [fire - window, fire) into fact_city_metrics"""
        window_end = scheduled_for or self._clock()
        window_start = window_end - timedelta(minutes=self.settings.metrics_window_minutes)

        async def body(repo: WarehouseRepository, result: JobResult) -> None:
            metrics = await repo.find_by_recorded_at_between(window_start, window_end)
            result.records_extracted = len(metrics)
            if not metrics:
                logger.info("No metrics in window", batch_id=result.batch_id)
                return

            dim_lookup = await repo.current_dim_lookup()
            previous = await repo.find_previous_day_values(window_start.date())

            transform = self.transformer.transform_metrics(
                metrics, dim_lookup, previous, result.batch_id, now=window_end
            )
            self._check_transform(transform, result)
            result.records_loaded = await repo.upsert_city_metrics(transform.metric_facts)

        return await self._run(METRICS_SNAPSHOT, body, window_start, window_end)

    # =========================================================================
    # EVENTS AGGREGATION
    # =========================================================================

    async def aggregate_events(self, scheduled_for: Optional[datetime] = None) -> JobResult:
        """
        Rebuild the daily event facts touched by [fire - window, fire).

        Every day the window touches is recomputed from its first event up to
        the fire time and replaces the stored grains, so rerunning a fire
        yields the same facts.
        """
        window_end = scheduled_for or self._clock()
        window_start = window_end - timedelta(minutes=self.settings.events_window_minutes)
        day_start = window_start.replace(hour=0, minute=0, second=0, microsecond=0)

        async def body(repo: WarehouseRepository, result: JobResult) -> None:
            events = await repo.find_by_event_timestamp_between(day_start, window_end)
            result.records_extracted = len(events)
            if not events:
                logger.info("No events in window", batch_id=result.batch_id)
                return

            dim_lookup = await repo.current_dim_lookup()
            transform = self.transformer.transform_events(events, dim_lookup, result.batch_id)
            self._check_transform(transform, result)
            result.records_loaded = await repo.replace_user_events(transform.event_facts)

        return await self._run(EVENTS_AGGREGATION, body, day_start, window_end)

    async def run_full_pipeline(self, scheduled_for: Optional[datetime] = None) -> List[JobResult]:
        """Dimension refresh, then metrics snapshot, then events aggregation"""
        fire = scheduled_for or self._clock()
        results = [
            await self.refresh_dimensions(fire),
            await self.snapshot_metrics(fire),
            await self.aggregate_events(fire),
        ]
        logger.info(
            "Full pipeline finished",
            statuses={r.job_name: r.status.value for r in results},
        )
        return results


def schedule_jobs(
    scheduler: EtlScheduler,
    jobs: Optional[EtlJobs] = None,
    settings: Optional[EtlSettings] = None,
) -> EtlJobs:
    """Register the three batch jobs with their configured cron expressions"""
    settings = settings or get_settings().etl
    jobs = jobs or EtlJobs(settings=settings)
    scheduler.register(DIMENSION_REFRESH, settings.dimension_refresh_cron, jobs.refresh_dimensions)
    scheduler.register(METRICS_SNAPSHOT, settings.metrics_snapshot_cron, jobs.snapshot_metrics)
    scheduler.register(EVENTS_AGGREGATION, settings.events_aggregation_cron, jobs.aggregate_events)
    return jobs
