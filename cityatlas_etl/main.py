"""
CityAtlas ETL Process

Entry point for the pipeline service:
- batch scheduler with the dimension, metrics and events jobs
- Kafka stream consumer feeding the micro-batcher
- Prometheus exporter

Usage:
    cityatlas-etl                          # run the service
    cityatlas-etl --run-once all           # run the batch jobs once and exit
    cityatlas-etl --run-once metrics_snapshot
    cityatlas-etl --init-schema            # create missing tables, then exit
"""

import argparse
import asyncio
import signal
import sys
from typing import List, Optional

import structlog
from prometheus_client import start_http_server

from cityatlas_etl.config import get_settings
from cityatlas_etl.config.logging import configure_logging
from cityatlas_etl.database.connection import (
    check_database_health,
    close_database,
    create_schema,
    init_database,
)
from cityatlas_etl.ingestion.stream_consumer import create_stream_consumer
from cityatlas_etl.orchestration.jobs import (
    DIMENSION_REFRESH,
    EVENTS_AGGREGATION,
    METRICS_SNAPSHOT,
    EtlJobs,
    schedule_jobs,
)
from cityatlas_etl.orchestration.scheduler import EtlScheduler

logger = structlog.get_logger(__name__)

RUN_ONCE_CHOICES = ["all", DIMENSION_REFRESH, METRICS_SNAPSHOT, EVENTS_AGGREGATION]


async def run_once(job_name: str) -> bool:
    """Run one job (or the full pipeline) and report success"""
    await init_database()
    try:
        jobs = EtlJobs()
        if job_name == "all":
            results = await jobs.run_full_pipeline()
        else:
            runner = {
                DIMENSION_REFRESH: jobs.refresh_dimensions,
                METRICS_SNAPSHOT: jobs.snapshot_metrics,
                EVENTS_AGGREGATION: jobs.aggregate_events,
            }[job_name]
            results = [await runner()]
        return all(r.succeeded for r in results)
    finally:
        await close_database()


async def init_schema() -> None:
    await init_database()
    try:
        await create_schema()
    finally:
        await close_database()


async def run_service(streaming: Optional[bool] = None) -> None:
    """Run scheduler and stream consumer until SIGINT/SIGTERM"""
    settings = get_settings()
    streaming = settings.etl.streaming_enabled if streaming is None else streaming

    logger.info("Starting CityAtlas ETL", environment=settings.app_env, version=settings.version)

    if settings.monitoring.metrics_enabled:
        start_http_server(settings.monitoring.prometheus_port)
        logger.info("Prometheus exporter started", port=settings.monitoring.prometheus_port)

    await init_database()
    logger.info("Database health", **(await check_database_health()))

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except NotImplementedError:
            # Windows event loops
            pass

    scheduler: Optional[EtlScheduler] = None
    if settings.etl.scheduler_enabled:
        scheduler = EtlScheduler(tick_seconds=settings.etl.scheduler_tick_seconds)
        schedule_jobs(scheduler, settings=settings.etl)
        scheduler.start()

    consumer = None
    consumer_task = None
    if streaming:
        consumer = create_stream_consumer()
        consumer_task = asyncio.create_task(consumer.start(), name="stream-consumer")

    try:
        await shutdown.wait()
    finally:
        logger.info("Shutting down...")
        if consumer is not None:
            await consumer.stop()
            await asyncio.gather(consumer_task, return_exceptions=True)
        if scheduler is not None:
            await scheduler.stop()
        await close_database()
        logger.info("CityAtlas ETL stopped")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="CityAtlas analytics ETL")
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create missing source and warehouse tables and exit",
    )
    parser.add_argument(
        "--run-once",
        choices=RUN_ONCE_CHOICES,
        help="Run batch job(s) once and exit",
    )
    parser.add_argument(
        "--no-streaming",
        action="store_true",
        help="Do not consume analytics events from Kafka",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override LOG_LEVEL",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    if args.init_schema:
        asyncio.run(init_schema())
        return 0

    if args.run_once:
        ok = asyncio.run(run_once(args.run_once))
        return 0 if ok else 1

    asyncio.run(run_service(streaming=False if args.no_streaming else None))
    return 0


if __name__ == "__main__":
    sys.exit(main())
