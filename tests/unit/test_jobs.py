"""
Unit Tests - ETL Jobs
"""
import json
from contextlib import asynccontextmanager
from datetime import date, datetime

import pytest
from sqlalchemy import select, update

from cityatlas_etl.config.settings import EtlSettings
from cityatlas_etl.database.models import (
    AnalyticsEventModel,
    CityModel,
    DimCityModel,
    FactCityMetricsModel,
    FactUserEventsDailyModel,
    MetricModel,
)
from cityatlas_etl.orchestration.jobs import (
    DIMENSION_REFRESH,
    EVENTS_AGGREGATION,
    METRICS_SNAPSHOT,
    EtlJobs,
    JobStatus,
    schedule_jobs,
)
from cityatlas_etl.orchestration.scheduler import EtlScheduler
from cityatlas_etl.records import EventType, MetricType
from cityatlas_etl.transformation.transformers import TransformationType, TransformResult

FIRE = datetime(2025, 1, 15, 10, 0, 0)


@pytest.fixture
def jobs(session_scope):
    return EtlJobs(session_scope=session_scope, clock=lambda: FIRE)


@pytest.fixture
def insert(session_scope):
    async def _insert(*models):
        async with session_scope() as db:
            db.add_all(models)

    return _insert


@pytest.fixture
def fetch(session_scope):
    async def _fetch(stmt):
        async with session_scope() as db:
            return (await db.execute(stmt)).scalars().all()

    return _fetch


def metric_row(city_id, value, recorded_at, metric_type=MetricType.AQI):
    return MetricModel(city_id=city_id, metric_type=metric_type, value=value, recorded_at=recorded_at)


def event_row(city_id, recorded_at, user_id, event_type=EventType.PAGE_VIEW, duration=None):
    metadata = json.dumps({"duration": duration}) if duration is not None else None
    return AnalyticsEventModel(
        city_id=city_id,
        event_type=event_type,
        event_timestamp=recorded_at,
        user_id=user_id,
        session_id=f"session-{user_id}",
        event_metadata=metadata,
    )


class TestRefreshDimensions:
    """Tests for EtlJobs.refresh_dimensions"""

    async def test_initial_load(self, jobs, seeded_cities, fetch):
        """Test an empty dimension gets one current row per city"""
        result = await jobs.refresh_dimensions(datetime(2025, 1, 15, 2, 0))

        assert result.status == JobStatus.COMPLETED
        assert result.job_name == DIMENSION_REFRESH
        assert result.batch_id == "ETL_20250115_100000_000000"
        assert result.records_extracted == 3
        assert result.records_loaded == 3

        rows = await fetch(select(DimCityModel))
        assert {r.city_slug for r in rows} == {"new-york", "london", "mumbai"}
        assert all(r.valid_from == date(2025, 1, 15) and r.is_current for r in rows)

    async def test_unchanged_cities(self, jobs, seeded_cities):
        """Test a second refresh without source changes loads nothing"""
        await jobs.refresh_dimensions(datetime(2025, 1, 15, 2, 0))

        result = await jobs.refresh_dimensions(datetime(2025, 1, 16, 2, 0))

        assert result.succeeded
        assert result.records_loaded == 0

    async def test_significant_change_versions_city(self, jobs, seeded_cities, session_scope, fetch):
        """Test a population jump closes the old version and opens a new one"""
        await jobs.refresh_dimensions(datetime(2025, 1, 15, 2, 0))
        async with session_scope() as db:
            await db.execute(update(CityModel).where(CityModel.id == 1).values(population=9_500_000))

        result = await jobs.refresh_dimensions(datetime(2025, 1, 16, 2, 0))

        assert result.records_loaded == 2
        rows = await fetch(
            select(DimCityModel).where(DimCityModel.city_slug == "new-york").order_by(DimCityModel.id)
        )
        old, new = rows
        assert not old.is_current
        assert old.valid_to == date(2025, 1, 15)
        assert new.is_current
        assert new.valid_from == date(2025, 1, 16)
        assert new.population == 9_500_000


class TestSnapshotMetrics:
    """Tests for EtlJobs.snapshot_metrics"""

    async def test_window_load(self, jobs, dim_cities, insert, fetch):
        """Test the half-open hour window is cleaned and loaded"""
        await insert(
            metric_row(1, 40.0, datetime(2025, 1, 15, 9, 10)),
            metric_row(2, 60.0, datetime(2025, 1, 15, 9, 20)),
            metric_row(3, 650.0, datetime(2025, 1, 15, 9, 30)),
            metric_row(1, 99.0, datetime(2025, 1, 15, 10, 0)),
            metric_row(2, 99.0, datetime(2025, 1, 15, 8, 59)),
        )

        result = await jobs.snapshot_metrics(FIRE)

        assert result.status == JobStatus.COMPLETED
        assert result.job_name == METRICS_SNAPSHOT
        assert result.window_start == datetime(2025, 1, 15, 9, 0)
        assert result.window_end == FIRE
        assert result.records_extracted == 3
        assert result.records_loaded == 2
        assert result.records_rejected == 1

        facts = await fetch(select(FactCityMetricsModel).order_by(FactCityMetricsModel.dim_city_id))
        assert [(f.dim_city_id, f.metric_value) for f in facts] == [
            (dim_cities["new-york"].id, 40.0),
            (dim_cities["london"].id, 60.0),
        ]
        assert all(f.etl_batch_id == result.batch_id for f in facts)
        assert facts[0].normalized_value == pytest.approx(92.0)

    async def test_rerun_replaces_rows(self, jobs, dim_cities, insert, fetch):
        """Test loading the same grain twice keeps one row with the latest values"""
        await insert(metric_row(1, 40.0, datetime(2025, 1, 15, 9, 10)))
        await jobs.snapshot_metrics(FIRE)

        await insert(metric_row(1, 55.0, datetime(2025, 1, 15, 10, 30)))
        result = await jobs.snapshot_metrics(datetime(2025, 1, 15, 11, 0))

        assert result.records_loaded == 1
        facts = await fetch(select(FactCityMetricsModel))
        assert len(facts) == 1
        assert facts[0].metric_value == 55.0
        assert facts[0].etl_batch_id == result.batch_id

    async def test_previous_day_delta(self, jobs, dim_cities, insert, fetch):
        """Test deltas against the value loaded for the previous day"""
        await insert(metric_row(1, 30.0, datetime(2025, 1, 14, 9, 10)))
        await jobs.snapshot_metrics(datetime(2025, 1, 14, 10, 0))

        await insert(metric_row(1, 40.0, datetime(2025, 1, 15, 9, 10)))
        await jobs.snapshot_metrics(FIRE)

        fact = (await fetch(select(FactCityMetricsModel).where(FactCityMetricsModel.metric_date == date(2025, 1, 15))))[0]
        assert fact.metric_value_previous == 30.0
        assert fact.metric_value_delta == 10.0

    async def test_missing_dimension_is_skipped(self, jobs, dim_cities, insert, fetch):
        """Test cities without a dimension row are counted, not loaded"""
        await insert(CityModel(id=4, slug="lagos", name="Lagos", country="Nigeria", population=15_000_000))
        await insert(
            metric_row(4, 80.0, datetime(2025, 1, 15, 9, 10)),
            metric_row(1, 40.0, datetime(2025, 1, 15, 9, 20)),
        )

        result = await jobs.snapshot_metrics(FIRE)

        assert result.succeeded
        assert result.records_loaded == 1
        assert result.grains_skipped == 1
        assert len(await fetch(select(FactCityMetricsModel))) == 1

    async def test_empty_window(self, jobs, dim_cities):
        """Test an empty window completes with nothing loaded"""
        result = await jobs.snapshot_metrics(FIRE)

        assert result.succeeded
        assert result.records_extracted == 0
        assert result.records_loaded == 0


class TestAggregateEvents:
    """Tests for EtlJobs.aggregate_events"""

    async def test_window_load(self, jobs, dim_cities, insert, fetch):
        """Test the 15 minute window is aggregated per city and globally"""
        await insert(
            event_row(1, datetime(2025, 1, 15, 9, 46), "u1", duration=30),
            event_row(1, datetime(2025, 1, 15, 9, 50), "u2", duration=120),
            event_row(None, datetime(2025, 1, 15, 9, 55), "u3", event_type=EventType.SEARCH),
            event_row(1, datetime(2025, 1, 15, 10, 0), "u4"),
        )

        result = await jobs.aggregate_events(FIRE)

        assert result.job_name == EVENTS_AGGREGATION
        assert result.window_start == datetime(2025, 1, 15, 0, 0)
        assert result.window_end == FIRE
        assert result.records_extracted == 3
        assert result.records_loaded == 2

        facts = await fetch(select(FactUserEventsDailyModel).order_by(FactUserEventsDailyModel.id))
        city, global_ = facts
        assert city.dim_city_id == dim_cities["new-york"].id
        assert city.event_count == 2
        assert city.unique_users == 2
        assert city.total_duration_seconds == 150
        assert city.engaged_count == 1
        assert global_.dim_city_id is None
        assert global_.event_type == EventType.SEARCH

    async def test_consecutive_windows_rebuild_the_day(self, jobs, dim_cities, insert, fetch):
        """Test a later window recomputes the whole daily grain"""
        await insert(
            event_row(1, datetime(2025, 1, 15, 9, 46), "u1", duration=30),
            event_row(1, datetime(2025, 1, 15, 9, 50), "u2", duration=120),
            event_row(1, datetime(2025, 1, 15, 10, 5), "u3", duration=5),
            event_row(None, datetime(2025, 1, 15, 9, 47), "u4", event_type=EventType.SEARCH),
            event_row(None, datetime(2025, 1, 15, 10, 1), "u5", event_type=EventType.SEARCH),
        )

        await jobs.aggregate_events(FIRE)
        result = await jobs.aggregate_events(datetime(2025, 1, 15, 10, 15))

        assert result.records_extracted == 5
        assert result.records_loaded == 2

        facts = await fetch(select(FactUserEventsDailyModel).order_by(FactUserEventsDailyModel.id))
        assert len(facts) == 2
        city, global_ = facts

        assert city.event_count == 3
        assert city.unique_users == 3
        assert city.unique_sessions == 3
        assert city.total_duration_seconds == 155
        assert city.duration_sample_count == 3
        assert city.avg_duration_seconds == pytest.approx(155 / 3)
        assert city.min_duration_seconds == 5
        assert city.max_duration_seconds == 120
        assert city.bounce_count == 1
        assert city.engaged_count == 1

        assert global_.event_count == 2

    async def test_rerun_is_idempotent(self, jobs, dim_cities, insert, fetch):
        """Test running the same fire twice leaves the facts unchanged"""
        await insert(
            event_row(1, datetime(2025, 1, 15, 9, 46), "u1", duration=30),
            event_row(1, datetime(2025, 1, 15, 9, 50), "u2", duration=120),
        )

        first = await jobs.aggregate_events(FIRE)
        second = await jobs.aggregate_events(FIRE)

        assert first.succeeded and second.succeeded
        facts = await fetch(select(FactUserEventsDailyModel))
        assert len(facts) == 1
        assert facts[0].event_count == 2
        assert facts[0].unique_users == 2
        assert facts[0].total_duration_seconds == 150
        assert facts[0].duration_sample_count == 2
        assert facts[0].etl_batch_id == second.batch_id

    async def test_midnight_fire_closes_previous_day(self, jobs, dim_cities, insert, fetch):
        """Test the midnight fire rebuilds the day that just ended"""
        await insert(
            event_row(1, datetime(2025, 1, 15, 8, 0), "u1"),
            event_row(1, datetime(2025, 1, 15, 23, 50), "u2"),
            event_row(1, datetime(2025, 1, 16, 0, 0), "u3"),
        )

        result = await jobs.aggregate_events(datetime(2025, 1, 16, 0, 0))

        assert result.window_start == datetime(2025, 1, 15, 0, 0)
        assert result.records_extracted == 2
        facts = await fetch(select(FactUserEventsDailyModel))
        assert [(f.event_date, f.event_count) for f in facts] == [(date(2025, 1, 15), 2)]


class TestJobFailures:
    """Tests for failure handling and scheduling"""

    async def test_failure_is_reported_not_raised(self):
        """Test a broken database surfaces as a FAILED result"""

        @asynccontextmanager
        async def broken_scope():
            raise ConnectionError("database unavailable")
            yield

        jobs = EtlJobs(session_scope=broken_scope, clock=lambda: FIRE)

        result = await jobs.snapshot_metrics(FIRE)

        assert result.status == JobStatus.FAILED
        assert not result.succeeded
        assert result.error == "database unavailable"
        assert result.completed_at == FIRE

    async def test_transform_errors_fail_the_job(self, session_scope, dim_cities, insert):
        """Test transform errors roll the run back"""

        class BrokenTransformer:
            def transform_metrics(self, *args, **kwargs):
                return TransformResult(
                    TransformationType.CITY_METRICS, "ETL_TEST", 1, 0, 0, FIRE, FIRE, 0.0,
                    errors=["normalizer exploded"],
                )

        await insert(metric_row(1, 40.0, datetime(2025, 1, 15, 9, 10)))
        jobs = EtlJobs(session_scope=session_scope, transformer=BrokenTransformer(), clock=lambda: FIRE)

        result = await jobs.snapshot_metrics(FIRE)

        assert result.status == JobStatus.FAILED
        assert result.error == "normalizer exploded"

    async def test_full_pipeline(self, jobs, seeded_cities, insert):
        """Test the full pipeline runs every job in order"""
        await insert(metric_row(1, 40.0, datetime(2025, 1, 15, 9, 10)))

        results = await jobs.run_full_pipeline(FIRE)

        assert [r.job_name for r in results] == [DIMENSION_REFRESH, METRICS_SNAPSHOT, EVENTS_AGGREGATION]
        assert all(r.succeeded for r in results)
        assert results[1].records_loaded == 1

    async def test_schedule_jobs(self, jobs):
        """Test the three jobs are registered with their crons"""
        scheduler = EtlScheduler(tick_seconds=1, clock=lambda: FIRE)
        settings = EtlSettings(metrics_snapshot_cron="30 * * * *")

        schedule_jobs(scheduler, jobs=jobs, settings=settings)

        registered = scheduler.jobs
        assert registered[DIMENSION_REFRESH].cron == "0 2 * * *"
        assert registered[METRICS_SNAPSHOT].cron == "30 * * * *"
        assert registered[EVENTS_AGGREGATION].cron == "*/15 * * * *"
        assert registered[METRICS_SNAPSHOT].next_run == datetime(2025, 1, 15, 10, 30)
