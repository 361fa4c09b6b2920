"""
Streaming Micro-batcher

Accumulates analytics events from the stream in memory, keyed by fact grain
(city or "global", event type, day), and periodically flushes the
accumulated grains as FactUserEventsDaily rows.

A flush is triggered when either
- ``batch_size`` events arrived since the last flush, or
- ``flush_interval_seconds`` elapsed since the last flush.

``add`` may be called from many threads. The grain map and counters sit
behind one lock; the due check and the swap of the whole map happen in the
same critical section. Rows are converted and handed to the sink outside
it, under a second lock that keeps one flush in flight.

A failed flush is not retried. The rows are logged as lost, counted and
passed to ``on_flush_failure`` when one is given.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Set

import structlog
from prometheus_client import Counter, Histogram

from cityatlas_etl.config import get_settings
from cityatlas_etl.records import EventType, FactUserEventsDaily, new_batch_id, utcnow
from cityatlas_etl.transformation.aggregators import BOUNCE_THRESHOLD_SECONDS, ENGAGED_THRESHOLD_SECONDS
from .events import StreamEventPayload

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

MICRO_BATCH_FLUSHES = Counter(
    "cityatlas_micro_batch_flushes_total",
    "Micro-batch flushes",
    ["status"],
)

MICRO_BATCH_FLUSH_TIME = Histogram(
    "cityatlas_micro_batch_flush_seconds",
    "Time spent handing a micro-batch to the sink",
)

STREAM_EVENTS_LOST = Counter(
    "cityatlas_stream_events_lost_total",
    "Stream events dropped by failed micro-batch flushes",
)


FactSink = Callable[[List[FactUserEventsDaily]], None]
FlushFailureHandler = Callable[[List[FactUserEventsDaily], Exception], None]


@dataclass
class EventAccumulator:
    """Running counters for one grain"""
    city_slug: Optional[str]
    event_type: EventType
    event_date: date
    event_count: int = 0
    users: Set[str] = field(default_factory=set)
    sessions: Set[str] = field(default_factory=set)
    total_duration: int = 0
    duration_count: int = 0
    min_duration: Optional[int] = None
    max_duration: Optional[int] = None
    bounce_count: int = 0
    engaged_count: int = 0

    @classmethod
    def for_event(cls, event: StreamEventPayload) -> "EventAccumulator":
        return cls(event.city_slug, event.event_type, event.timestamp.date())

    def add(self, event: StreamEventPayload) -> None:
        self.event_count += 1
        if event.user_id:
            self.users.add(event.user_id)
        if event.session_id:
            self.sessions.add(event.session_id)

        duration = event.duration_in_seconds
        if duration is not None and duration > 0:
            self.total_duration += duration
            self.duration_count += 1
            self.min_duration = duration if self.min_duration is None else min(self.min_duration, duration)
            self.max_duration = duration if self.max_duration is None else max(self.max_duration, duration)
            if duration < BOUNCE_THRESHOLD_SECONDS:
                self.bounce_count += 1
            if duration >= ENGAGED_THRESHOLD_SECONDS:
                self.engaged_count += 1

    def to_fact_row(self, batch_id: str) -> FactUserEventsDaily:
        has_durations = self.duration_count > 0
        return FactUserEventsDaily(
            event_date=self.event_date,
            event_type=self.event_type,
            batch_id=batch_id,
            city_slug=self.city_slug,
            event_count=self.event_count,
            unique_users=len(self.users),
            unique_sessions=len(self.sessions),
            total_duration_seconds=self.total_duration if has_durations else None,
            avg_duration_seconds=self.total_duration / self.duration_count if has_durations else None,
            min_duration_seconds=self.min_duration,
            max_duration_seconds=self.max_duration,
            duration_sample_count=self.duration_count,
            bounce_count=self.bounce_count,
            engaged_count=self.engaged_count,
            raw_event_count=self.event_count,
        )


class MicroBatcher:
    """
    Thread-safe in-memory aggregation of stream events.

    Example:
        batcher = MicroBatcher(sink=write_rows)
        batcher.add(payload)      # from any thread
        batcher.flush_if_due()    # from a periodic ticker
        batcher.flush()           # on shutdown
    """

    def __init__(
        self,
        sink: FactSink,
        batch_size: Optional[int] = None,
        flush_interval_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        on_flush_failure: Optional[FlushFailureHandler] = None,
        wall_clock: Callable[[], datetime] = utcnow,
    ):
        etl = get_settings().etl
        self.batch_size = batch_size if batch_size is not None else etl.micro_batch_size
        self.flush_interval_seconds = (
            flush_interval_seconds if flush_interval_seconds is not None
            else etl.micro_batch_interval_seconds
        )
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.flush_interval_seconds <= 0:
            raise ValueError("flush_interval_seconds must be positive")

        self._sink = sink
        self._on_flush_failure = on_flush_failure
        self._clock = clock
        self._wall_clock = wall_clock

        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._accumulators: Dict[str, EventAccumulator] = {}
        self._events_since_flush = 0
        self._last_flush = clock()

        self._total_events = 0
        self._total_flushes = 0
        self._failed_flushes = 0
        self._events_lost = 0

    def _is_due(self) -> bool:
        """Caller must hold ``_lock``"""
        if self._events_since_flush >= self.batch_size:
            return True
        return self._clock() - self._last_flush >= self.flush_interval_seconds

    def _take_snapshot(self) -> Dict[str, EventAccumulator]:
        """Swap out the grain map and reset the flush counters. Caller must hold ``_lock``"""
        snapshot = self._accumulators
        self._accumulators = {}
        self._events_since_flush = 0
        self._last_flush = self._clock()
        return snapshot

    def add(self, event: StreamEventPayload) -> bool:
        """
        Accumulate one event.

        The due check and the snapshot happen in the same critical section,
        so a size-triggered flush carries exactly ``batch_size`` events.

        Returns True when the event triggered a flush.
        """
        key = event.grain_key
        with self._lock:
            accumulator = self._accumulators.get(key)
            if accumulator is None:
                accumulator = EventAccumulator.for_event(event)
                self._accumulators[key] = accumulator
            accumulator.add(event)
            self._events_since_flush += 1
            self._total_events += 1
            snapshot = self._take_snapshot() if self._is_due() else None

        if snapshot is None:
            return False
        self._deliver(snapshot)
        return True

    def flush_if_due(self) -> int:
        with self._lock:
            snapshot = self._take_snapshot() if self._is_due() else None
        return self._deliver(snapshot) if snapshot else 0

    def flush(self) -> int:
        """
        Flush every accumulated grain.

        Returns the number of fact rows accepted by the sink.
        """
        with self._lock:
            snapshot = self._take_snapshot()
        return self._deliver(snapshot)

    def _deliver(self, snapshot: Dict[str, EventAccumulator]) -> int:
        """Convert a snapshot to fact rows and hand them to the sink, one flush at a time"""
        if not snapshot:
            return 0

        with self._flush_lock:
            batch_id = new_batch_id("KAFKA", self._wall_clock())
            rows = [acc.to_fact_row(batch_id) for acc in snapshot.values()]
            event_count = sum(acc.event_count for acc in snapshot.values())

            logger.info("Flushing micro-batch", batch_id=batch_id, grains=len(rows), events=event_count)

            start = time.perf_counter()
            try:
                self._sink(rows)
            except Exception as e:
                with self._lock:
                    self._failed_flushes += 1
                    self._events_lost += event_count
                MICRO_BATCH_FLUSHES.labels(status="failed").inc()
                STREAM_EVENTS_LOST.inc(event_count)
                logger.error(
                    "Micro-batch flush failed, potential event loss",
                    batch_id=batch_id,
                    grains=len(rows),
                    events=event_count,
                    error=str(e),
                )
                if self._on_flush_failure is not None:
                    try:
                        self._on_flush_failure(rows, e)
                    except Exception as handler_error:
                        logger.error("Flush failure handler raised", batch_id=batch_id, error=str(handler_error))
                return 0

            MICRO_BATCH_FLUSH_TIME.observe(time.perf_counter() - start)
            MICRO_BATCH_FLUSHES.labels(status="success").inc()
            with self._lock:
                self._total_flushes += 1
            logger.info("Micro-batch flush complete", batch_id=batch_id, fact_rows=len(rows))
            return len(rows)

    @property
    def pending_event_count(self) -> int:
        with self._lock:
            return sum(acc.event_count for acc in self._accumulators.values())

    def stats(self) -> dict:
        with self._lock:
            return {
                "pending_grains": len(self._accumulators),
                "pending_events": sum(acc.event_count for acc in self._accumulators.values()),
                "events_since_flush": self._events_since_flush,
                "total_events": self._total_events,
                "total_flushes": self._total_flushes,
                "failed_flushes": self._failed_flushes,
                "events_lost": self._events_lost,
            }
