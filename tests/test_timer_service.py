"""Tests for the timer service."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from dingotrack.errors import (
    DuplicateNameError,
    InvalidTimerError,
    NoCurrentUserError,
    NotFoundError,
    RemoteSinkError,
)
from dingotrack.events import EventBus, UserChanged
from dingotrack.storage import open_store
from dingotrack.storage.shared import SharedKeyValueStore
from dingotrack.storage.store import KeyValueStore
from dingotrack.timers.service import TimerService
from dingotrack.timers.types import Timer


def utc(hour: int, minute: int, second: int = 0, microsecond: int = 0) -> datetime:
    return datetime(2024, 3, 4, hour, minute, second, microsecond, tzinfo=timezone.utc)


class TestTimerConfiguration:
    """Tests for adding, saving and deleting timers."""

    def test_add_timer(self, service, store) -> None:
        """Timers are stored under the user-scoped key in camelCase."""
        timer = service.add_timer("Coding", "primary")

        assert timer == Timer(name="Coding", calendar_id="primary")
        assert service.get_all_timers() == [timer]
        assert store.get("timers_user_1") == [{"name": "Coding", "calendarId": "primary"}]

    def test_add_duplicate_rejected(self, service) -> None:
        service.add_timer("Coding", "primary")

        with pytest.raises(DuplicateNameError, match="already exists"):
            service.add_timer("Coding", "work")

        assert len(service.get_all_timers()) == 1

    def test_names_are_trimmed(self, service) -> None:
        service.add_timer("  Coding ", "primary")

        assert service.get_timer("Coding") is not None
        with pytest.raises(DuplicateNameError):
            service.add_timer("Coding", "primary")

    def test_empty_name_rejected(self, service) -> None:
        with pytest.raises(InvalidTimerError):
            service.add_timer("   ", "primary")

    def test_save_timer_upserts(self, service) -> None:
        """save_timer() replaces in place or appends."""
        service.add_timer("Coding", "primary")
        service.add_timer("Reading", "primary")

        service.save_timer("Coding", "work")
        service.save_timer("Writing", "primary")

        assert [(t.name, t.calendar_id) for t in service.get_all_timers()] == [
            ("Coding", "work"),
            ("Reading", "primary"),
            ("Writing", "primary"),
        ]

    @pytest.mark.asyncio
    async def test_delete_timer(self, service) -> None:
        service.add_timer("Coding", "primary")

        assert await service.delete_timer("Coding") is True
        assert service.get_all_timers() == []
        assert await service.delete_timer("Coding") is False

    @pytest.mark.asyncio
    async def test_delete_running_timer_records_session(self, service, calendar, clock) -> None:
        """Deleting a running timer stops it first."""
        service.add_timer("Coding", "primary")
        await service.start_stop_timer("Coding")
        clock.advance(minutes=5)

        assert await service.delete_timer("Coding") is True

        assert service.get_active_timers() == {}
        assert len(calendar.created) == 1
        assert [s.name for s in service.get_timer_sessions()] == ["Coding"]


class TestStartStop:
    """Tests for the start/stop state machine."""

    @pytest.mark.asyncio
    async def test_start_then_stop(self, service, calendar, clock) -> None:
        """Toggling twice starts, then stops and mirrors the session."""
        service.add_timer("Coding", "primary")

        started = await service.start_stop_timer("Coding")
        assert started.action == "started"
        assert started.start_time == utc(12, 0)
        assert service.is_timer_active("Coding")

        clock.advance(minutes=25, seconds=10)
        stopped = await service.start_stop_timer("Coding")

        assert stopped.action == "stopped"
        assert stopped.duration == 25
        assert not service.is_timer_active("Coding")

        calendar_id, event = calendar.created[0]
        assert calendar_id == "primary"
        assert event.summary == "Coding"
        assert event.start == utc(12, 0)
        assert event.end == utc(12, 26)

    @pytest.mark.asyncio
    async def test_ten_second_session(self, service, calendar, clock) -> None:
        """A 10s session is reported as 1 minute on 12:00-12:01."""
        service.add_timer("Coding", "primary")
        await service.start_stop_timer("Coding")
        clock.advance(seconds=10)

        result = await service.start_stop_timer("Coding")

        assert result.duration == 1
        _, event = calendar.created[0]
        assert (event.start, event.end) == (utc(12, 0), utc(12, 1))
        session = service.get_timer_sessions()[0]
        assert (session.start_time, session.end_time) == (utc(12, 0), utc(12, 1))
        assert session.duration_minutes == 1

    @pytest.mark.asyncio
    async def test_partial_end_minute(self, service, calendar, clock) -> None:
        """12:00:00 to 12:02:05.3 reports 2 minutes on 12:00-12:03."""
        service.add_timer("Coding", "primary")
        await service.start_stop_timer("Coding")
        clock.now = utc(12, 2, 5, 300000)

        result = await service.start_stop_timer("Coding")

        assert result.duration == 2
        _, event = calendar.created[0]
        assert (event.start, event.end) == (utc(12, 0), utc(12, 3))

    @pytest.mark.asyncio
    async def test_unknown_timer(self, service) -> None:
        with pytest.raises(NotFoundError, match="not found"):
            await service.start_stop_timer("Nope")

    @pytest.mark.asyncio
    async def test_timers_run_independently(self, service, clock) -> None:
        service.add_timer("Coding", "primary")
        service.add_timer("Reading", "primary")

        await service.start_stop_timer("Coding")
        clock.advance(minutes=1)
        await service.start_stop_timer("Reading")

        assert service.get_active_timers() == {
            "Coding": "2024-03-04T12:00:00+00:00",
            "Reading": "2024-03-04T12:01:00+00:00",
        }

    @pytest.mark.asyncio
    async def test_calendar_failure_still_records_session(self, store, clock, make_calendar, caplog) -> None:
        """A failing calendar is logged and the session is kept locally."""
        calendar = make_calendar(fail=RemoteSinkError("HTTP 500: backend error", 500))
        service = TimerService(store, calendar, clock=clock)
        service.set_current_user("user_1")
        service.add_timer("Coding", "primary")
        await service.start_stop_timer("Coding")
        clock.advance(minutes=3)

        with caplog.at_level(logging.WARNING):
            result = await service.start_stop_timer("Coding")

        assert result.duration == 3
        assert not service.is_timer_active("Coding")
        assert len(service.get_timer_sessions()) == 1
        assert "Failed to create calendar event" in caplog.text

    @pytest.mark.asyncio
    async def test_no_calendar_still_records_session(self, store, clock) -> None:
        service = TimerService(store, None, clock=clock)
        service.set_current_user("user_1")
        service.add_timer("Coding", "primary")
        await service.start_stop_timer("Coding")
        clock.advance(minutes=1)

        await service.start_stop_timer("Coding")

        assert len(service.get_timer_sessions()) == 1

    @pytest.mark.asyncio
    async def test_zero_elapsed_skips_calendar(self, service, calendar) -> None:
        """A session with no elapsed time is recorded but not mirrored."""
        service.add_timer("Coding", "primary")
        await service.start_stop_timer("Coding")

        result = await service.start_stop_timer("Coding")

        assert result.duration == 1
        assert calendar.created == []
        assert len(service.get_timer_sessions()) == 1

    @pytest.mark.asyncio
    async def test_active_timers_persist_immediately(self, service, store) -> None:
        service.add_timer("Coding", "primary")

        await service.start_stop_timer("Coding")
        assert store.get("activeTimers_user_1") == {"Coding": "2024-03-04T12:00:00+00:00"}

        await service.start_stop_timer("Coding")
        assert store.get("activeTimers_user_1") == {}

    def test_timer_status(self, service, clock) -> None:
        service.add_timer("Coding", "primary")

        status = service.get_timer_status("Coding")
        assert status == {
            "name": "Coding",
            "calendarId": "primary",
            "isRunning": False,
            "startTime": None,
            "elapsedSeconds": 0,
        }

        with pytest.raises(NotFoundError):
            service.get_timer_status("Nope")

    @pytest.mark.asyncio
    async def test_running_timer_status(self, service, clock) -> None:
        service.add_timer("Coding", "primary")
        await service.start_stop_timer("Coding")
        clock.advance(seconds=95)

        status = service.get_timer_status("Coding")

        assert status["isRunning"] is True
        assert status["startTime"] == "2024-03-04T12:00:00+00:00"
        assert status["elapsedSeconds"] == 95
        assert service.get_timer_start_time("Coding") == utc(12, 0)


class TestSessions:
    """Tests for session history."""

    @pytest.mark.asyncio
    async def test_sessions_capped_fifo(self, store, calendar, clock) -> None:
        """Only the newest sessions are kept, oldest evicted first."""
        service = TimerService(store, calendar, session_limit=5, clock=clock)
        service.set_current_user("user_1")
        service.add_timer("Coding", "primary")

        for _ in range(8):
            await service.start_stop_timer("Coding")
            clock.advance(minutes=1)
            await service.start_stop_timer("Coding")
            clock.advance(minutes=1)

        sessions = service.get_timer_sessions()
        assert len(sessions) == 5
        assert sessions[0].start_time == utc(12, 6)
        assert sessions[-1].start_time == utc(12, 14)

    @pytest.mark.asyncio
    async def test_default_cap_is_one_hundred(self, service, clock) -> None:
        service.add_timer("Coding", "primary")

        for _ in range(101):
            await service.start_stop_timer("Coding")
            clock.advance(minutes=1)
            await service.start_stop_timer("Coding")

        assert len(service.get_timer_sessions()) == 100

    @pytest.mark.asyncio
    async def test_session_serialization(self, service, store, clock) -> None:
        service.add_timer("Coding", "primary")
        await service.start_stop_timer("Coding")
        clock.advance(minutes=2)
        await service.start_stop_timer("Coding")

        assert store.get("timerSessions_user_1") == [
            {
                "name": "Coding",
                "calendarId": "primary",
                "startTime": "2024-03-04T12:00:00Z",
                "endTime": "2024-03-04T12:02:00Z",
                "durationMinutes": 2,
            }
        ]

    def test_legacy_duration_key_is_read(self, service, store) -> None:
        """Sessions written with a plain ``duration`` key still load."""
        store.set(
            "timerSessions_user_1",
            [
                {
                    "name": "Coding",
                    "calendarId": "primary",
                    "startTime": "2024-03-04T12:00:00.000Z",
                    "endTime": "2024-03-04T12:05:00.000Z",
                    "duration": 5,
                }
            ],
        )

        [session] = service.get_timer_sessions()
        assert session.duration_minutes == 5
        assert session.end_time == utc(12, 5)


class TestUserScope:
    """Tests for per-user isolation and the unscoped state."""

    @pytest.mark.asyncio
    async def test_no_user_mutations_fail_closed(self, store, clock, make_calendar) -> None:
        service = TimerService(store, make_calendar(), clock=clock)

        with pytest.raises(NoCurrentUserError):
            service.add_timer("Coding", "primary")
        with pytest.raises(NoCurrentUserError):
            service.save_timer("Coding", "primary")
        with pytest.raises(NoCurrentUserError):
            await service.delete_timer("Coding")
        with pytest.raises(NoCurrentUserError):
            await service.start_stop_timer("Coding")

        assert store.keys() == []

    def test_no_user_reads_are_empty(self, store) -> None:
        store.set("timers_user_1", [{"name": "Coding", "calendarId": "primary"}])
        service = TimerService(store)

        assert service.get_all_timers() == []
        assert service.get_active_timers() == {}
        assert service.get_timer_sessions() == []

    @pytest.mark.asyncio
    async def test_users_are_isolated(self, service, store, clock) -> None:
        service.add_timer("Coding", "primary")
        await service.start_stop_timer("Coding")

        service.set_current_user("user_2")
        assert service.get_all_timers() == []
        assert service.get_active_timers() == {}
        service.add_timer("Coding", "work")

        service.set_current_user("user_1")
        assert service.get_timer("Coding").calendar_id == "primary"
        assert service.is_timer_active("Coding")
        assert store.get("timers_user_2") == [{"name": "Coding", "calendarId": "work"}]

    def test_unscoping_clears_view(self, service) -> None:
        service.add_timer("Coding", "primary")

        service.set_current_user(None)

        assert service.get_all_timers() == []
        with pytest.raises(NoCurrentUserError):
            service.add_timer("Reading", "primary")

    def test_follows_user_changed_events(self, service) -> None:
        bus = EventBus()
        bus.subscribe(service.handle_event)

        bus.publish(UserChanged("user_9"))
        assert service.current_user_id == "user_9"

        bus.publish(UserChanged(None))
        assert service.current_user_id is None

    @pytest.mark.asyncio
    async def test_session_goes_to_stopping_user(self, store, clock, make_calendar) -> None:
        """A user switch during the calendar call does not move the session."""
        service = TimerService(store, None, clock=clock)

        class SwitchingCalendar(make_calendar):
            async def create_event(self, calendar_id, event):
                service.set_current_user("user_2")
                return await super().create_event(calendar_id, event)

        service._calendar = SwitchingCalendar()
        service.set_current_user("user_1")
        service.add_timer("Coding", "primary")
        await service.start_stop_timer("Coding")
        clock.advance(minutes=1)

        await service.start_stop_timer("Coding")

        assert len(store.get("timerSessions_user_1")) == 1
        assert store.get("timerSessions_user_2") is None


class TestPersistence:
    """Tests for reloading state from the store."""

    @pytest.mark.asyncio
    async def test_restart_restores_running_timers(self, store_path, clock, make_calendar) -> None:
        """A new process sees timers, running timers and sessions."""
        first = TimerService(SharedKeyValueStore(store_path), make_calendar(), clock=clock)
        first.set_current_user("user_1")
        first.add_timer("Coding", "primary")
        first.add_timer("Reading", "primary")
        await first.start_stop_timer("Reading")
        clock.advance(minutes=1)
        await first.start_stop_timer("Reading")
        await first.start_stop_timer("Coding")

        second = TimerService(SharedKeyValueStore(store_path), make_calendar(), clock=clock)
        second.set_current_user("user_1")

        assert [t.name for t in second.get_all_timers()] == ["Coding", "Reading"]
        assert second.get_active_timers() == {"Coding": "2024-03-04T12:01:00+00:00"}
        assert len(second.get_timer_sessions()) == 1

        clock.advance(minutes=4)
        result = await second.start_stop_timer("Coding")
        assert result.duration == 4

    def test_save_timer_survives_reload(self, store_path) -> None:
        """A timer saved by one store instance reads back identically from another."""
        first = TimerService(SharedKeyValueStore(store_path))
        first.set_current_user("user_1")
        saved = first.save_timer("Coding", "work@group.calendar.google.com")

        second = TimerService(SharedKeyValueStore(store_path))
        second.set_current_user("user_1")

        assert second.get_timer("Coding") == saved

    def test_orphaned_active_timer_dropped(self, store, caplog) -> None:
        store.set("timers_user_1", [{"name": "Coding", "calendarId": "primary"}])
        store.set(
            "activeTimers_user_1",
            {"Coding": "2024-03-04T11:00:00Z", "Gone": "2024-03-04T11:00:00Z"},
        )
        service = TimerService(store)

        with caplog.at_level(logging.WARNING):
            service.set_current_user("user_1")

        assert list(service.get_active_timers()) == ["Coding"]
        assert "Gone" in caplog.text

    def test_malformed_value_treated_as_empty(self, store, caplog) -> None:
        store.set("timers_user_1", {"not": "a list"})
        service = TimerService(store)

        with caplog.at_level(logging.WARNING):
            service.set_current_user("user_1")

        assert service.get_all_timers() == []
        assert "Ignoring malformed value" in caplog.text

    def test_naive_start_time_read_as_utc(self, store) -> None:
        store.set("timers_user_1", [{"name": "Coding", "calendarId": "primary"}])
        store.set("activeTimers_user_1", {"Coding": "2024-03-04T11:00:00"})
        service = TimerService(store)
        service.set_current_user("user_1")

        assert service.get_timer_start_time("Coding") == utc(11, 0)

    def test_file_layout_is_plain_json(self, service, store_path) -> None:
        service.add_timer("Coding", "primary")

        data = json.loads(store_path.read_text())
        assert data == {"timers_user_1": [{"name": "Coding", "calendarId": "primary"}]}


class TestAutoSave:
    """Tests for the periodic flush loop."""

    @pytest.mark.asyncio
    async def test_start_stop(self, store, clock) -> None:
        service = TimerService(store, autosave_interval=0.01, clock=clock)

        await service.start()
        assert service.is_running
        await service.stop()

        assert not service.is_running

    @pytest.mark.asyncio
    async def test_loop_retries_unsaved_start(self, store_path, clock) -> None:
        """A start that could not be written reaches disk on the next tick."""
        store = KeyValueStore(store_path)
        service = TimerService(store, autosave_interval=0.01, clock=clock)
        service.set_current_user("user_1")
        service.add_timer("Coding", "primary")
        with patch.object(store, "update", return_value=False):
            await service.start_stop_timer("Coding")
        assert service.is_timer_active("Coding")
        assert store.get("activeTimers_user_1") is None

        await service.start()
        await asyncio.sleep(0.05)

        assert KeyValueStore(store_path).get("activeTimers_user_1") == {
            "Coding": "2024-03-04T12:00:00+00:00"
        }
        await service.stop()

    @pytest.mark.asyncio
    async def test_stop_flushes(self, store, clock) -> None:
        service = TimerService(store, autosave_interval=60, clock=clock)
        service.set_current_user("user_1")
        service.add_timer("Coding", "primary")
        await service.start()
        with patch.object(store, "update", return_value=False):
            await service.start_stop_timer("Coding")

        await service.stop()

        assert store.get("activeTimers_user_1") == {"Coding": "2024-03-04T12:00:00+00:00"}

    @pytest.mark.asyncio
    async def test_double_start_warns(self, store, caplog) -> None:
        service = TimerService(store, autosave_interval=60)
        await service.start()

        with caplog.at_level(logging.WARNING):
            await service.start()

        assert "already running" in caplog.text
        await service.stop()


class TestSharedStore:
    """Tests for two services working on the same store file."""

    @pytest.fixture
    def pair(self, tmp_path, clock):
        cli_side = TimerService(open_store("timers", tmp_path), clock=clock)
        bridge = TimerService(open_store("timers", tmp_path), clock=clock)
        cli_side.set_current_user("user_1")
        bridge.set_current_user("user_1")
        cli_side.add_timer("Coding", "primary")
        cli_side.add_timer("Reading", "primary")
        return cli_side, bridge

    @pytest.mark.asyncio
    async def test_flush_keeps_timer_started_elsewhere(self, pair, tmp_path) -> None:
        """Flushing one service does not erase a timer the other started."""
        cli_side, bridge = pair

        await cli_side.start_stop_timer("Coding")
        bridge.flush()

        assert open_store("timers", tmp_path).get("activeTimers_user_1") == {
            "Coding": "2024-03-04T12:00:00+00:00"
        }
        assert bridge.is_timer_active("Coding")

    @pytest.mark.asyncio
    async def test_toggle_stops_timer_started_elsewhere(self, pair, clock) -> None:
        """A toggle sees the stored running state, not a stale local copy."""
        cli_side, bridge = pair
        await cli_side.start_stop_timer("Coding")
        clock.advance(minutes=2)

        result = await bridge.start_stop_timer("Coding")

        assert result.action == "stopped"
        assert result.duration == 2
        cli_side.flush()
        assert cli_side.get_active_timers() == {}

    @pytest.mark.asyncio
    async def test_concurrent_starts_are_merged(self, pair, clock) -> None:
        cli_side, bridge = pair

        await cli_side.start_stop_timer("Coding")
        clock.advance(minutes=1)
        await bridge.start_stop_timer("Reading")

        expected = {
            "Coding": "2024-03-04T12:00:00+00:00",
            "Reading": "2024-03-04T12:01:00+00:00",
        }
        assert cli_side.get_active_timers() == expected
        assert bridge.get_active_timers() == expected

    @pytest.mark.asyncio
    async def test_delete_stops_timer_started_elsewhere(self, pair, clock) -> None:
        cli_side, bridge = pair
        await cli_side.start_stop_timer("Coding")
        clock.advance(minutes=3)

        assert await bridge.delete_timer("Coding") is True

        assert cli_side.get_active_timers() == {}
        assert [s.duration_minutes for s in cli_side.get_timer_sessions()] == [3]
