"""
Logging Configuration for the CityAtlas ETL

structlog on top of the stdlib root logger. Pipeline records (and anything
emitted by aiokafka, SQLAlchemy or Prefect through stdlib logging) go through
the same processor chain and are rendered as JSON lines or colored console
output, depending on ``LOG_FORMAT``.
"""

import logging
import sys
from typing import List, Optional

import structlog
from structlog.contextvars import bound_contextvars
from structlog.processors import JSONRenderer, TimeStamper
from structlog.stdlib import ProcessorFormatter, add_log_level

from cityatlas_etl.config.settings import get_settings

# Third-party loggers held at WARNING or above
NOISY_LOGGERS = ("aiokafka", "kafka", "sqlalchemy.engine", "croniter")


def _shared_processors() -> List:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_log_level,
        TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _renderer(log_format: str):
    if log_format == "json":
        return JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging(log_level: Optional[str] = None) -> None:
    """
    Route structlog and stdlib logging through one stdout handler.

    Args:
        log_level: Overrides ``LOG_LEVEL`` from settings (DEBUG, INFO, ...)
    """
    monitoring = get_settings().monitoring
    level_name = (log_level or monitoring.log_level).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    processors = _shared_processors()
    structlog.configure(
        processors=processors + [ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        ProcessorFormatter(
            processor=_renderer(monitoring.log_format),
            foreign_pre_chain=processors,
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.get_logger(__name__).info(
        "Logging configured",
        level=level_name,
        format=monitoring.log_format,
        environment=get_settings().app_env,
    )


def batch_context(job: str, batch_id: str):
    """
    Bind the job name and batch id to every log line emitted inside the block,
    including lines from the cleaner, aggregator and repository.

    Example:
        with batch_context("snapshot_metrics", "ETL_20250115_100000_000000"):
            ...
    """
    return bound_contextvars(job=job, batch_id=batch_id)
