"""Calendar port consumed by the timer service.

The timer service treats the calendar as a fallible remote sink: it only
needs to create events, list calendars and know who is signed in.
"""

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field


class Calendar(BaseModel):
    """A calendar the user can write to.

    Attributes:
        id: Calendar ID.
        name: Display name.
        primary: Whether this is the account's primary calendar.
        access_role: Google access role (owner or writer).
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    primary: bool = False
    access_role: str = Field(default="owner", alias="accessRole")

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class CalendarEvent(BaseModel):
    """An event to create on, or returned by, a calendar."""

    model_config = ConfigDict(populate_by_name=True)

    summary: str
    start: datetime
    end: datetime
    calendar_id: str | None = Field(default=None, alias="calendarId")
    id: str | None = None


@runtime_checkable
class CalendarPort(Protocol):
    """Interface the timer service uses to mirror sessions."""

    async def create_event(self, calendar_id: str, event: CalendarEvent) -> CalendarEvent:
        """Create an event and return it as stored remotely."""
        ...

    async def get_calendars(self) -> list[Calendar]:
        """List the calendars events can be created on."""
        ...

    def is_authenticated(self) -> bool:
        ...

    def get_current_user_id(self) -> str | None:
        ...
