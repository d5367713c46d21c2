"""
Input schemas — Events and Measurements.

Both are immutable once accepted. Timestamps are normalized to naive UTC.
Either may name the activity it belongs to; activity lifecycle events
(planned, started, completed) must.
"""

from datetime import datetime
from typing import Any, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from levelrisk.clock import parse_timestamp, to_naive_utc
from levelrisk.schemas.enums import ACTIVITY_TRANSITIONS, ActivityStatus, EventType, SensorType, Severity
from levelrisk.schemas.location import LocationRef


def _validate_location(value: str) -> str:
    return LocationRef.parse(value).key


class Event(BaseModel):
    """A discrete operational occurrence at a location."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), min_length=1, max_length=128)
    timestamp: datetime
    location: str
    type: EventType
    severity: Severity = Severity.MEDIUM
    metadata: dict[str, Any] = Field(default_factory=dict)
    activity: Optional[str] = Field(default=None, min_length=1, max_length=128)

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, v: datetime) -> datetime:
        return to_naive_utc(v)

    @field_validator("location")
    @classmethod
    def _check_location(cls, v: str) -> str:
        return _validate_location(v)

    @field_validator("metadata")
    @classmethod
    def _check_scheduled_for(cls, v: dict[str, Any]) -> dict[str, Any]:
        scheduled = v.get("scheduled_for")
        if scheduled is not None:
            if not isinstance(scheduled, str):
                raise ValueError("metadata.scheduled_for must be an ISO timestamp string")
            try:
                parse_timestamp(scheduled)
            except ValueError as exc:
                raise ValueError(f"metadata.scheduled_for is not a timestamp: {scheduled!r}") from exc
        return v

    @model_validator(mode="after")
    def _check_activity(self) -> "Event":
        if self.type in ACTIVITY_TRANSITIONS and self.activity is None:
            raise ValueError(f"{self.type} event needs an activity")
        return self

    @property
    def activity_status(self) -> Optional[ActivityStatus]:
        """Status this event moves its activity to; None for non-lifecycle events."""
        return ACTIVITY_TRANSITIONS.get(self.type)

    @property
    def scheduled_for(self) -> Optional[datetime]:
        raw = self.metadata.get("scheduled_for")
        return parse_timestamp(raw) if raw else None

    def payload_equals(self, other: "Event") -> bool:
        return self.model_dump(exclude={"id"}) == other.model_dump(exclude={"id"})


class Measurement(BaseModel):
    """A single sensor reading at a location."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), min_length=1, max_length=128)
    timestamp: datetime
    location: str
    sensor_type: SensorType
    value: float = Field(allow_inf_nan=False)
    unit: str = ""
    activity: Optional[str] = Field(default=None, min_length=1, max_length=128)

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, v: datetime) -> datetime:
        return to_naive_utc(v)

    @field_validator("location")
    @classmethod
    def _check_location(cls, v: str) -> str:
        return _validate_location(v)

    def payload_equals(self, other: "Measurement") -> bool:
        return self.model_dump(exclude={"id"}) == other.model_dump(exclude={"id"})
