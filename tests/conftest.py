"""Shared fixtures for Dingo Track tests."""

from datetime import datetime, timedelta, timezone

import pytest

from dingotrack.calendar.port import Calendar, CalendarEvent
from dingotrack.storage.store import KeyValueStore
from dingotrack.timers.service import TimerService


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeCalendar:
    """In-memory calendar port that records created events."""

    def __init__(self, fail: Exception | None = None) -> None:
        self.fail = fail
        self.created: list[tuple[str, CalendarEvent]] = []
        self.calendars = [
            Calendar(id="primary", name="Me", primary=True, access_role="owner"),
            Calendar(id="work@group.calendar.google.com", name="Work", access_role="writer"),
        ]

    async def create_event(self, calendar_id: str, event: CalendarEvent) -> CalendarEvent:
        if self.fail is not None:
            raise self.fail
        self.created.append((calendar_id, event))
        return event.model_copy(update={"calendar_id": calendar_id, "id": f"evt{len(self.created)}"})

    async def get_calendars(self) -> list[Calendar]:
        return list(self.calendars)

    def is_authenticated(self) -> bool:
        return True

    def get_current_user_id(self) -> str | None:
        return "user_1"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 4, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "dingo-track-timers.json"


@pytest.fixture
def store(store_path) -> KeyValueStore:
    return KeyValueStore(store_path)


@pytest.fixture
def service(store, calendar, clock) -> TimerService:
    service = TimerService(store, calendar, clock=clock)
    service.set_current_user("user_1")
    return service


@pytest.fixture
def make_calendar():
    """Factory for calendars with custom behavior."""
    return FakeCalendar
