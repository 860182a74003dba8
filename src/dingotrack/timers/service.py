"""Timer service: configured timers, running timers and session history.

This module provides the TimerService class that owns the timer lifecycle
(STOPPED -> RUNNING -> STOPPED), mirrors finished sessions to a calendar and
keeps everything persisted per user in a key-value store.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from pydantic import TypeAdapter, ValidationError

from dingotrack.calendar.port import CalendarEvent, CalendarPort
from dingotrack.errors import (
    DuplicateNameError,
    InvalidTimerError,
    NoCurrentUserError,
    NotFoundError,
)
from dingotrack.events import Event, UserChanged
from dingotrack.storage.store import KeyValueStore
from dingotrack.timers.alignment import align_interval, duration_minutes
from dingotrack.timers.types import (
    ACTIVE_TIMERS_ADAPTER,
    ACTIVE_TIMERS_PREFIX,
    SESSIONS_ADAPTER,
    SESSIONS_PREFIX,
    TIMERS_ADAPTER,
    TIMERS_PREFIX,
    ActiveTimer,
    StartStopResult,
    Timer,
    TimerSession,
    ensure_utc,
    user_key,
)

logger = logging.getLogger(__name__)

DEFAULT_AUTOSAVE_INTERVAL = 30.0
DEFAULT_SESSION_LIMIT = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimerService:
    """Service for managing timers.

    The TimerService handles:
    - Timer creation, update and deletion
    - Start/stop transitions and duration computation
    - Mirroring finished sessions to the calendar (best effort)
    - Session history capped at ``session_limit`` entries
    - Periodic flushing of running timers to the store

    Every collection is scoped by the current user. Without a user, reads
    return empty results and mutating calls raise ``NoCurrentUserError``.

    Example:
        service = TimerService(store, calendar)
        service.set_current_user("user_1234")
        service.add_timer("Coding", "primary")

        await service.start_stop_timer("Coding")  # started
        await service.start_stop_timer("Coding")  # stopped, event created
    """

    def __init__(
        self,
        store: KeyValueStore,
        calendar: CalendarPort | None = None,
        autosave_interval: float = DEFAULT_AUTOSAVE_INTERVAL,
        session_limit: int = DEFAULT_SESSION_LIMIT,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the timer service.

        Args:
            store: Store holding timers, running timers and sessions.
            calendar: Calendar receiving an event per finished session.
            autosave_interval: Seconds between flushes of running timers.
            session_limit: Maximum sessions kept per user.
            clock: Returns the current UTC time (for tests).
        """
        self._store = store
        self._calendar = calendar
        self._autosave_interval = autosave_interval
        self._session_limit = session_limit
        self._clock = clock or _utcnow

        self._current_user_id: str | None = None
        self._active: dict[str, ActiveTimer] = {}
        # Local transitions not yet merged into the store (None = stopped)
        self._pending: dict[str, datetime | None] = {}

        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def current_user_id(self) -> str | None:
        """Get the user the service is scoped to."""
        return self._current_user_id

    @property
    def is_running(self) -> bool:
        """Check if the auto-save loop is running."""
        return self._running

    # User scope

    def set_current_user(self, user_id: str | None) -> None:
        """Switch the persistence scope and reload running timers.

        Args:
            user_id: Opaque user identifier, or None to unscope.
        """
        if self._pending and not self._persist_active():
            logger.warning(
                f"Discarding {len(self._pending)} unsaved running-timer changes "
                f"for {self._current_user_id}"
            )

        self._current_user_id = user_id or None
        self._active.clear()
        self._pending.clear()

        if self._current_user_id is None:
            logger.info("Timer service unscoped")
            return

        self._refresh_active(warn_orphans=True)
        logger.info(f"Timer service scoped to {user_id} ({len(self._active)} running)")

    def handle_event(self, event: Event) -> None:
        """Follow user changes published on the event bus."""
        if isinstance(event, UserChanged):
            self.set_current_user(event.user_id)

    def _require_user(self) -> str:
        if self._current_user_id is None:
            raise NoCurrentUserError()
        return self._current_user_id

    # Store access

    def _read(
        self,
        prefix: str,
        adapter: TypeAdapter,
        default: Any,
        user_id: str | None = None,
    ) -> Any:
        """Read and validate a user-scoped value.

        Values that fail validation are logged and replaced by ``default``.
        """
        user_id = user_id or self._current_user_id
        if user_id is None:
            return default

        key = user_key(prefix, user_id)
        raw = self._store.get(key)
        if raw is None:
            return default
        try:
            return adapter.validate_python(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed value for {key}: {e.error_count()} errors")
            return default

    def _write_timers(self, user_id: str, timers: list[Timer]) -> None:
        self._store.set(
            user_key(TIMERS_PREFIX, user_id),
            [timer.to_dict() for timer in timers],
        )

    def _refresh_active(self, warn_orphans: bool = False) -> None:
        """Reload running timers from the store.

        The stored map is authoritative, since other processes start and
        stop timers in the same file. Local transitions that could not be
        written yet are laid over it.
        """
        self._active.clear()
        if self._current_user_id is None:
            return

        configured = {timer.name for timer in self.get_all_timers()}
        saved = self._read(ACTIVE_TIMERS_PREFIX, ACTIVE_TIMERS_ADAPTER, {})
        for name, start_time in self._overlay_pending(saved).items():
            if name not in configured:
                if warn_orphans:
                    logger.warning(f"Dropping running timer for unknown timer '{name}'")
                continue
            self._active[name] = ActiveTimer(name=name, start_time=start_time)

    def _overlay_pending(self, saved: dict[str, datetime]) -> dict[str, datetime]:
        merged = dict(saved)
        for name, start_time in self._pending.items():
            if start_time is None:
                merged.pop(name, None)
            else:
                merged[name] = start_time
        return merged

    def _persist_active(self) -> bool:
        """Merge local transitions into the stored map under the store lock.

        Returns:
            True if the store was written.
        """
        if self._current_user_id is None:
            return False

        key = user_key(ACTIVE_TIMERS_PREFIX, self._current_user_id)

        def merge(current: Any) -> dict[str, str]:
            try:
                saved = ACTIVE_TIMERS_ADAPTER.validate_python(current or {})
            except ValidationError as e:
                logger.warning(f"Replacing malformed value for {key}: {e.error_count()} errors")
                saved = {}
            merged = self._overlay_pending(saved)
            return {name: ensure_utc(start).isoformat() for name, start in merged.items()}

        written = self._store.update(key, merge, {})
        if written:
            self._pending.clear()

        self._refresh_active()
        return written

    def flush(self) -> None:
        """Merge running timers with the store now."""
        self._persist_active()

    # Timer configuration

    def get_all_timers(self) -> list[Timer]:
        """List configured timers for the current user."""
        return self._read(TIMERS_PREFIX, TIMERS_ADAPTER, [])

    def get_timer(self, name: str) -> Timer | None:
        """Get a configured timer by name."""
        for timer in self.get_all_timers():
            if timer.name == name:
                return timer
        return None

    @staticmethod
    def _clean_name(name: str) -> str:
        cleaned = (name or "").strip()
        if not cleaned:
            raise InvalidTimerError("Timer name must not be empty")
        return cleaned

    def add_timer(self, name: str, calendar_id: str) -> Timer:
        """Add a new timer.

        Args:
            name: Timer name.
            calendar_id: Calendar receiving this timer's events.

        Returns:
            The created timer.

        Raises:
            NoCurrentUserError: If no user is set.
            DuplicateNameError: If the name is taken.
        """
        user_id = self._require_user()
        name = self._clean_name(name)

        timers = self.get_all_timers()
        if any(timer.name == name for timer in timers):
            raise DuplicateNameError(name)

        timer = Timer(name=name, calendar_id=calendar_id)
        timers.append(timer)
        self._write_timers(user_id, timers)

        logger.info(f"Added timer: {name} -> {calendar_id}")
        return timer

    def save_timer(self, name: str, calendar_id: str) -> Timer:
        """Create or update a timer.

        Args:
            name: Timer name.
            calendar_id: Calendar receiving this timer's events.

        Returns:
            The saved timer.
        """
        user_id = self._require_user()
        name = self._clean_name(name)

        timers = self.get_all_timers()
        timer = Timer(name=name, calendar_id=calendar_id)

        for i, existing in enumerate(timers):
            if existing.name == name:
                timers[i] = timer
                break
        else:
            timers.append(timer)

        self._write_timers(user_id, timers)
        logger.info(f"Saved timer: {name} -> {calendar_id}")
        return timer

    async def delete_timer(self, name: str) -> bool:
        """Delete a timer, stopping it first if it is running.

        Args:
            name: Timer name.

        Returns:
            True if the timer was found and deleted.
        """
        user_id = self._require_user()

        timers = self.get_all_timers()
        remaining = [timer for timer in timers if timer.name != name]
        if len(remaining) == len(timers):
            return False

        self._refresh_active()
        if name in self._active:
            timer = next(timer for timer in timers if timer.name == name)
            await self._stop_timer(timer)

        self._write_timers(user_id, remaining)
        logger.info(f"Deleted timer: {name}")
        return True

    # Start / stop

    def get_active_timers(self) -> dict[str, str]:
        """Running timers as a name -> ISO start time mapping."""
        self._refresh_active()
        return {
            name: active.start_time.isoformat()
            for name, active in self._active.items()
        }

    def is_timer_active(self, name: str) -> bool:
        self._refresh_active()
        return name in self._active

    def get_timer_start_time(self, name: str) -> datetime | None:
        self._refresh_active()
        active = self._active.get(name)
        return active.start_time if active else None

    def get_timer_status(self, name: str) -> dict[str, Any]:
        """Get whether a timer is running and for how long.

        Raises:
            NotFoundError: If the timer is not configured.
        """
        timer = self.get_timer(name)
        if timer is None:
            raise NotFoundError(name)

        self._refresh_active()
        active = self._active.get(name)
        elapsed = 0
        if active is not None:
            elapsed = max(0, int((self._clock() - active.start_time).total_seconds()))

        return {
            "name": timer.name,
            "calendarId": timer.calendar_id,
            "isRunning": active is not None,
            "startTime": active.start_time.isoformat() if active else None,
            "elapsedSeconds": elapsed,
        }

    async def start_stop_timer(self, name: str) -> StartStopResult:
        """Start a stopped timer or stop a running one.

        Args:
            name: Timer name.

        Returns:
            ``started`` with the start time, or ``stopped`` with the
            duration in whole minutes.

        Raises:
            NoCurrentUserError: If no user is set.
            NotFoundError: If the timer is not configured.
        """
        self._require_user()

        timer = self.get_timer(name)
        if timer is None:
            raise NotFoundError(name)

        self._refresh_active()
        if name in self._active:
            duration = await self._stop_timer(timer)
            return StartStopResult(action="stopped", duration=duration)

        start_time = self._clock()
        self._pending[name] = start_time
        self._persist_active()

        logger.info(f"Started timer: {name}")
        return StartStopResult(action="started", start_time=start_time)

    async def _stop_timer(self, timer: Timer) -> int:
        """Stop a running timer, mirror it and record the session.

        Returns:
            Duration in whole minutes, at least 1.
        """
        user_id = self._require_user()
        active = self._active[timer.name]
        end_time = self._clock()

        elapsed = end_time - active.start_time
        minutes = duration_minutes(active.start_time, end_time)
        aligned_start, aligned_end = align_interval(active.start_time, end_time)

        self._pending[timer.name] = None
        self._persist_active()

        if elapsed > timedelta(0) and self._calendar is not None:
            event = CalendarEvent(summary=timer.name, start=aligned_start, end=aligned_end)
            try:
                await self._calendar.create_event(timer.calendar_id, event)
                logger.info(f"Created calendar event for {timer.name} on {timer.calendar_id}")
            except Exception as e:
                # Local history stays authoritative when the mirror fails
                logger.warning(f"Failed to create calendar event for {timer.name}: {e}")

        self._append_session(
            user_id,
            TimerSession(
                name=timer.name,
                calendar_id=timer.calendar_id,
                start_time=aligned_start,
                end_time=aligned_end,
                duration_minutes=minutes,
            ),
        )

        logger.info(f"Stopped timer: {timer.name} ({minutes}m)")
        return minutes

    # Session history

    def _append_session(self, user_id: str, session: TimerSession) -> None:
        """Append a session, evicting the oldest beyond the cap."""
        sessions = self._read(SESSIONS_PREFIX, SESSIONS_ADAPTER, [], user_id=user_id)
        sessions.append(session)
        if len(sessions) > self._session_limit:
            del sessions[: len(sessions) - self._session_limit]

        self._store.set(
            user_key(SESSIONS_PREFIX, user_id),
            [s.to_dict() for s in sessions],
        )

    def get_timer_sessions(self) -> list[TimerSession]:
        """List recorded sessions for the current user, oldest first."""
        return self._read(SESSIONS_PREFIX, SESSIONS_ADAPTER, [])

    # Auto-save loop

    async def _autosave_loop(self) -> None:
        """Flush running timers every ``autosave_interval`` seconds."""
        logger.info("Timer auto-save started")

        while self._running:
            await asyncio.sleep(self._autosave_interval)
            try:
                self._persist_active()
            except Exception as e:
                logger.exception(f"Error in timer auto-save: {e}")

        logger.info("Timer auto-save stopped")

    async def start(self) -> None:
        """Start the periodic auto-save of running timers."""
        if self._running:
            logger.warning("Timer service is already running")
            return

        self._running = True
        self._task = asyncio.create_task(
            self._autosave_loop(),
            name="timer_autosave_loop",
        )

    async def stop(self) -> None:
        """Stop the auto-save loop and flush running timers."""
        if self._running:
            self._running = False

            if self._task:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
                self._task = None

        self._persist_active()
