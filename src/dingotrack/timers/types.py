"""Type definitions for timers, running timers and sessions.

Models serialize with camelCase aliases so the store files keep the layout
shared with the desktop app and other readers.
"""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator

# Store key prefixes; keys are "<prefix>_<userId>"
TIMERS_PREFIX = "timers"
ACTIVE_TIMERS_PREFIX = "activeTimers"
SESSIONS_PREFIX = "timerSessions"


def user_key(prefix: str, user_id: str) -> str:
    """Build the store key for a user-scoped collection."""
    return f"{prefix}_{user_id}"


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Timer(BaseModel):
    """A named, user-configured tracker bound to a calendar.

    Attributes:
        name: Timer name, unique per user.
        calendar_id: Calendar receiving events for this timer.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., description="Timer name, unique per user")
    calendar_id: str = Field(..., alias="calendarId", description="Destination calendar ID")

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ActiveTimer(BaseModel):
    """A timer that is currently running.

    Attributes:
        name: Timer name.
        start_time: When the timer was started (UTC).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    start_time: datetime = Field(..., alias="startTime")

    @field_validator("start_time")
    @classmethod
    def normalize_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class TimerSession(BaseModel):
    """A completed start/stop cycle.

    Start and end are the minute-aligned instants sent to the calendar.

    Attributes:
        name: Timer name.
        calendar_id: Calendar the session belongs to.
        start_time: Aligned start.
        end_time: Aligned end.
        duration_minutes: Reported duration in whole minutes.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    calendar_id: str = Field(..., alias="calendarId")
    start_time: datetime = Field(..., alias="startTime")
    end_time: datetime = Field(..., alias="endTime")
    duration_minutes: int = Field(
        default=0,
        validation_alias=AliasChoices("durationMinutes", "duration", "duration_minutes"),
        serialization_alias="durationMinutes",
    )

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class StartStopResult(BaseModel):
    """Outcome of toggling a timer.

    Attributes:
        action: "started" or "stopped".
        start_time: Start instant, set when the timer was started.
        duration: Whole minutes (at least 1), set when the timer was stopped.
    """

    action: Literal["started", "stopped"]
    start_time: datetime | None = Field(default=None, serialization_alias="startTime")
    duration: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# Per-key schemas used to validate values read back from the store
TIMERS_ADAPTER = TypeAdapter(list[Timer])
ACTIVE_TIMERS_ADAPTER = TypeAdapter(dict[str, datetime])
SESSIONS_ADAPTER = TypeAdapter(list[TimerSession])
