"""
Streaming Ingestion Module
"""
from .events import StreamEventPayload
from .micro_batcher import EventAccumulator, MicroBatcher
from .stream_consumer import StreamConsumer, create_stream_consumer

__all__ = [
    "StreamEventPayload",
    "EventAccumulator",
    "MicroBatcher",
    "StreamConsumer",
    "create_stream_consumer",
]
