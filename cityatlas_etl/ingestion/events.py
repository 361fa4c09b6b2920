"""
Stream Event Models

JSON payloads published by the CityAtlas frontend on the analytics topics.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from cityatlas_etl.records import GLOBAL_GRAIN, EventType, to_naive_utc


class StreamEventPayload(BaseModel):
    """
    Analytics event as received from Kafka.

    Field names are camelCase on the wire (``citySlug``, ``durationInSeconds``).
    The event type is resolved through the stream aliases, so unknown types
    fail validation.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    event_type: EventType
    timestamp: datetime
    city_slug: Optional[str] = None
    section: Optional[str] = None
    duration_in_seconds: Optional[int] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    search_query: Optional[str] = None
    referrer: Optional[str] = None
    device_type: Optional[str] = None

    @field_validator("event_type", mode="before")
    @classmethod
    def map_stream_event_type(cls, value):
        if isinstance(value, str):
            return EventType.from_stream_name(value)
        return value

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return to_naive_utc(value)

    @field_validator("city_slug", "session_id", "user_id", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def grain_key(self) -> str:
        return f"{self.city_slug or GLOBAL_GRAIN}|{self.event_type.value}|{self.timestamp.date().isoformat()}"
