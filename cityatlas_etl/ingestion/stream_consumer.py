"""
Kafka Stream Consumer

Consumes the CityAtlas analytics topics and feeds the micro-batcher:
- Consumer group management with manual commits
- Payload validation, invalid events go to the dead-letter queue
- Micro-batching in a worker thread pool
- Periodic flush ticker so quiet streams still drain
- Flushed fact rows persisted through the warehouse repository
- Graceful shutdown that drains pending events
"""

import asyncio
import json
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

import structlog
from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError
from prometheus_client import Counter, Histogram
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from cityatlas_etl.config import get_settings
from cityatlas_etl.config.settings import KafkaSettings
from cityatlas_etl.database.connection import get_db
from cityatlas_etl.database.repository import WarehouseRepository
from cityatlas_etl.records import FactUserEventsDaily, utcnow
from .events import StreamEventPayload
from .micro_batcher import MicroBatcher

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

EVENTS_CONSUMED = Counter(
    "cityatlas_events_consumed_total",
    "Analytics events read from Kafka, by outcome",
    ["topic", "status"],
)

BATCHER_HANDOFF_SECONDS = Histogram(
    "cityatlas_batcher_handoff_seconds",
    "Time spent handing an event to the micro-batcher",
    ["topic"],
)

DEAD_LETTERS = Counter(
    "cityatlas_dead_letters_total",
    "Messages published to dead-letter topics",
    ["kind"],
)


# =============================================================================
# STREAM CONSUMER
# =============================================================================

def _deserialize(raw: bytes) -> Any:
    """JSON body, or None when the message is not JSON"""
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None


def _serialize(value: Dict[str, Any]) -> bytes:
    return json.dumps(value, default=str).encode("utf-8")


SessionScope = Callable[[], AsyncContextManager[AsyncSession]]


class StreamConsumer:
    """
    Kafka consumer for the analytics topics.

    Kafka offsets are committed once an event is in the micro-batcher, so
    events still in memory when the process dies are lost.

    Example:
        consumer = create_stream_consumer()
        await consumer.start()
    """

    def __init__(
        self,
        kafka: Optional[KafkaSettings] = None,
        batch_size: Optional[int] = None,
        flush_interval_seconds: Optional[float] = None,
        session_scope: SessionScope = get_db,
    ):
        self.kafka = kafka or get_settings().kafka
        self._session_scope = session_scope

        self.batcher = MicroBatcher(
            sink=self._persist_from_worker,
            batch_size=batch_size,
            flush_interval_seconds=flush_interval_seconds,
            on_flush_failure=self._dead_letter_from_worker,
        )

        self._consumer: Optional[AIOKafkaConsumer] = None
        self._producer: Optional[AIOKafkaProducer] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._ticker: Optional[asyncio.Task] = None
        self._running = False

    def _build_clients(self) -> None:
        self._consumer = AIOKafkaConsumer(
            *self.kafka.topics,
            bootstrap_servers=self.kafka.bootstrap_servers,
            group_id=self.kafka.consumer_group,
            auto_offset_reset=self.kafka.auto_offset_reset,
            enable_auto_commit=False,
            max_poll_records=self.kafka.max_poll_records,
            session_timeout_ms=self.kafka.session_timeout_ms,
            heartbeat_interval_ms=self.kafka.heartbeat_interval_ms,
            value_deserializer=_deserialize,
        )
        # Dead letters only
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self.kafka.bootstrap_servers,
            value_serializer=_serialize,
        )

    # =========================================================================
    # PARSING AND DEAD LETTERS
    # =========================================================================

    def parse_event(self, data: Any) -> StreamEventPayload:
        """
        Validate a message body.

        Raises:
            ValueError: Body is not a JSON object or fails validation
        """
        if not isinstance(data, dict):
            raise ValueError("Message body is not a JSON object")
        try:
            return StreamEventPayload.model_validate(data)
        except ValidationError as e:
            raise ValueError(f"Invalid analytics event: {e.error_count()} validation error(s)") from e

    async def _publish_dead_letter(self, topic: str, kind: str, message: Dict[str, Any]) -> None:
        if self._producer is None:
            logger.error("No producer, dead letter dropped", topic=topic, kind=kind)
            return

        message["failed_at"] = utcnow().isoformat()
        try:
            await self._producer.send_and_wait(topic, value=message)
        except Exception as e:
            logger.error("Dead letter publish failed", topic=topic, kind=kind, error=str(e))
            return
        DEAD_LETTERS.labels(kind=kind).inc()
        logger.info("Dead letter published", topic=topic, kind=kind)

    async def _dead_letter_event(self, topic: str, data: Any, error: str) -> None:
        await self._publish_dead_letter(
            f"{topic}.dlq",
            "event",
            {"original_topic": topic, "original_data": data, "error": error},
        )

    async def _dead_letter_rows(self, rows: List[FactUserEventsDaily], error: str) -> None:
        await self._publish_dead_letter(
            self.kafka.flush_dlq_topic,
            "flush",
            {"fact_rows": [asdict(row) for row in rows], "error": error},
        )

    # =========================================================================
    # MICRO-BATCH BRIDGE
    # =========================================================================

    async def _persist(self, rows: List[FactUserEventsDaily]) -> int:
        async with self._session_scope() as db:
            return await WarehouseRepository(db).upsert_user_events(rows)

    def _persist_from_worker(self, rows: List[FactUserEventsDaily]) -> None:
        """Micro-batcher sink; runs in a worker thread"""
        future = asyncio.run_coroutine_threadsafe(self._persist(rows), self._loop)
        future.result()

    def _dead_letter_from_worker(self, rows: List[FactUserEventsDaily], error: Exception) -> None:
        future = asyncio.run_coroutine_threadsafe(self._dead_letter_rows(rows, str(error)), self._loop)
        future.result()

    async def _run_in_worker(self, fn, *args):
        return await self._loop.run_in_executor(self._executor, fn, *args)

    async def _flush_ticker(self) -> None:
        while self._running:
            await asyncio.sleep(self.kafka.flush_tick_seconds)
            try:
                await self._run_in_worker(self.batcher.flush_if_due)
            except Exception as e:
                logger.error("Flush ticker error", error=str(e))

    # =========================================================================
    # CONSUME LOOP
    # =========================================================================

    async def _process_message(self, topic: str, data: Any) -> bool:
        """Validate one message and hand it to the micro-batcher"""
        try:
            event = self.parse_event(data)
        except ValueError as e:
            logger.warning("Invalid analytics event, skipping", topic=topic, error=str(e))
            EVENTS_CONSUMED.labels(topic=topic, status="invalid").inc()
            await self._dead_letter_event(topic, data, str(e))
            return False

        with BATCHER_HANDOFF_SECONDS.labels(topic=topic).time():
            await self._run_in_worker(self.batcher.add, event)
        EVENTS_CONSUMED.labels(topic=topic, status="accepted").inc()
        return True

    async def start(self) -> None:
        """Consume until stop() is called or the broker connection is lost"""
        self._loop = asyncio.get_running_loop()
        self._executor = ThreadPoolExecutor(
            max_workers=self.kafka.worker_threads,
            thread_name_prefix="micro-batcher",
        )
        self._build_clients()
        await self._consumer.start()
        await self._producer.start()

        self._running = True
        self._ticker = asyncio.create_task(self._flush_ticker(), name="micro-batch-ticker")
        logger.info(
            "Stream consumer running",
            topics=self.kafka.topics,
            group_id=self.kafka.consumer_group,
            batch_size=self.batcher.batch_size,
            flush_interval_seconds=self.batcher.flush_interval_seconds,
        )

        try:
            async for message in self._consumer:
                if not self._running:
                    break
                await self._process_message(message.topic, message.value)
                # Invalid events are in the DLQ, so every message is committed
                await self._consumer.commit()
        except KafkaConnectionError as e:
            logger.error("Kafka connection lost", error=str(e))
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Drain the batcher, then close the Kafka clients. Safe to call twice."""
        if self._loop is None:
            return

        self._running = False
        logger.info("Stopping stream consumer", **self.batcher.stats())

        if self._ticker is not None:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None

        if self._executor is not None:
            await self._run_in_worker(self.batcher.flush)
            self._executor.shutdown(wait=True)
            self._executor = None

        for client in (self._consumer, self._producer):
            if client is not None:
                await client.stop()
        self._consumer = self._producer = None

        logger.info("Stream consumer stopped")


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def create_stream_consumer() -> StreamConsumer:
    """Create a stream consumer configured from settings"""
    settings = get_settings()
    return StreamConsumer(
        kafka=settings.kafka,
        batch_size=settings.etl.micro_batch_size,
        flush_interval_seconds=settings.etl.micro_batch_interval_seconds,
    )
