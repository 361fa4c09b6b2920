"""
CityAtlas Analytics ETL
Centralized Configuration Management

Pydantic settings with environment variable support, validation and type
safety. Settings instances are frozen once loaded and handed to components by
reference.
"""

from functools import lru_cache
from typing import List, Literal, Optional

from croniter import croniter
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENVIRONMENTS = ("development", "staging", "production", "testing")


class DatabaseSettings(BaseSettings):
    """PostgreSQL Warehouse Configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_", frozen=True)

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="cityatlas", description="Database name (POSTGRES_DB)")
    user: str = Field(default="cityatlas", description="Database user")
    password: SecretStr = Field(default="cityatlas", description="Database password")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, description="Full async URL (overrides host/port)")

    @property
    def async_url(self) -> str:
        """Async database URL for asyncpg"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class KafkaSettings(BaseSettings):
    """Kafka Streaming Configuration"""

    model_config = SettingsConfigDict(env_prefix="KAFKA_", frozen=True)

    bootstrap_servers: str = Field(default="localhost:9092", description="Kafka bootstrap servers")
    consumer_group: str = Field(default="cityatlas-etl-consumer", description="Consumer group ID")
    auto_offset_reset: str = Field(default="latest", description="Auto offset reset policy")
    max_poll_records: int = Field(default=500, description="Max poll records")
    session_timeout_ms: int = Field(default=30000, description="Session timeout")
    heartbeat_interval_ms: int = Field(default=10000, description="Heartbeat interval")

    # Consumer-side micro-batching
    worker_threads: int = Field(default=4, gt=0, description="Threads feeding the micro-batcher")
    flush_tick_seconds: float = Field(default=1.0, gt=0, description="Interval of the flush-if-due ticker")
    flush_dlq_topic: str = Field(
        default="cityatlas.etl.fact-user-events-daily.dlq",
        description="Dead-letter topic for fact rows of failed flushes",
    )

    # Topic configuration
    topics_city_searched: str = Field(default="cityatlas.analytics.city-searched")
    topics_section_viewed: str = Field(default="cityatlas.analytics.section-viewed")
    topics_time_spent: str = Field(default="cityatlas.analytics.time-spent-on-section")

    @property
    def topics(self) -> List[str]:
        """List of all analytics topics consumed by the ETL"""
        return [
            self.topics_city_searched,
            self.topics_section_viewed,
            self.topics_time_spent,
        ]


class EtlSettings(BaseSettings):
    """Batch and streaming pipeline configuration"""

    model_config = SettingsConfigDict(env_prefix="ETL_", frozen=True)

    streaming_enabled: bool = Field(default=True, description="Consume analytics events from Kafka")
    scheduler_enabled: bool = Field(default=True, description="Run the in-process batch scheduler")

    # Cron expressions (minute hour day month weekday)
    dimension_refresh_cron: str = Field(default="0 2 * * *", description="Daily dimension refresh")
    metrics_snapshot_cron: str = Field(default="0 * * * *", description="Hourly metrics snapshot")
    events_aggregation_cron: str = Field(default="*/15 * * * *", description="Events aggregation")
    scheduler_tick_seconds: float = Field(default=1.0, description="Scheduler ticker interval")

    # Extraction windows
    metrics_window_minutes: int = Field(default=60, description="Metrics snapshot window")
    events_window_minutes: int = Field(default=15, description="Events aggregation window")

    # Micro-batching
    micro_batch_size: int = Field(default=100, gt=0, description="Events per micro-batch flush")
    micro_batch_interval_seconds: float = Field(default=10.0, gt=0, description="Max seconds between flushes")

    @field_validator("dimension_refresh_cron", "metrics_snapshot_cron", "events_aggregation_cron")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        if not croniter.is_valid(v):
            raise ValueError(f"Invalid cron expression: {v!r}")
        return v


class DataQualitySettings(BaseSettings):
    """Data Quality Configuration"""

    model_config = SettingsConfigDict(env_prefix="DQ_", frozen=True)

    outlier_z_threshold: float = Field(default=3.0, description="Z-score threshold for outliers")
    stale_warning_hours: int = Field(default=24, description="Age at which data is flagged as aging")
    stale_reject_hours: int = Field(default=168, description="Age at which data fails freshness")
    clamp_out_of_range: bool = Field(default=False, description="Clamp instead of rejecting out-of-range values")
    reject_stale: bool = Field(default=False, description="Reject metrics that fail freshness")


class MonitoringSettings(BaseSettings):
    """Monitoring and Observability Configuration"""

    model_config = SettingsConfigDict(env_prefix="", frozen=True, populate_by_name=True)

    prometheus_port: int = Field(default=9108, alias="PROMETHEUS_PORT", description="Prometheus exporter port")
    metrics_enabled: bool = Field(default=True, alias="METRICS_ENABLED", description="Start the exporter")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: Literal["json", "text"] = Field(default="json", alias="LOG_FORMAT", description="Log format")


class Settings(BaseSettings):
    """
    Root settings object.

    Each section reads its own prefixed variables; the root reads .env and the
    unprefixed APP_ENV and DEBUG.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    # Application
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")

    # Version
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    etl: EtlSettings = Field(default_factory=EtlSettings)
    data_quality: DataQualitySettings = Field(default_factory=DataQualitySettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        v = v.lower()
        if v not in ENVIRONMENTS:
            raise ValueError(f"APP_ENV must be one of: {', '.join(ENVIRONMENTS)}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Load settings once per process; later calls share the frozen instance"""
    return Settings()
