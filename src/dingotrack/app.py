"""Application wiring for Dingo Track.

This module builds the stores, the calendar client and the timer service
from settings and connects them through the event bus. Nothing here is a
module-level singleton: each ``TrackerApp`` owns its own instances.
"""

import logging
from datetime import datetime
from typing import Callable

from dingotrack.calendar.google import GoogleCalendarClient
from dingotrack.calendar.port import CalendarPort
from dingotrack.config import Settings
from dingotrack.events import EventBus, UserChanged
from dingotrack.operations import TimerOperations
from dingotrack.storage import KeyValueStore, open_store
from dingotrack.timers.service import TimerService

logger = logging.getLogger(__name__)


class TrackerApp:
    """Composition root for the timer system.

    The app coordinates:
    - The timers store and the auth store (shared with other processes)
    - The Google Calendar client, which publishes user changes
    - The timer service, subscribed to those user changes
    - The operation surface used by the CLI and the stdio bridge

    Example:
        async with TrackerApp(settings) as app:
            await app.operations.execute("start_stop_timer", name="Coding")
    """

    def __init__(
        self,
        config: Settings,
        user_id: str | None = None,
        timers_store: KeyValueStore | None = None,
        auth_store: KeyValueStore | None = None,
        calendar: CalendarPort | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the application.

        Args:
            config: Settings to build components from.
            user_id: User scope override (default: signed-in user, then
                ``config.default_user_id``).
            timers_store: Store for timer data (default: shared store file).
            auth_store: Store for tokens and calendars (default: shared store file).
            calendar: Calendar port (default: ``GoogleCalendarClient``).
            clock: Clock passed to the timer service.
        """
        self._config = config
        self._events = EventBus()

        self._timers_store = timers_store or self._open_store(config.timers_store_name)
        self._auth_store = auth_store or self._open_store(config.auth_store_name)

        self._calendar = calendar or GoogleCalendarClient(
            self._auth_store,
            client_id=config.google_client_id,
            client_secret=config.google_client_secret,
            timezone_name=config.google_timezone,
            events=self._events,
        )

        self._timer_service = TimerService(
            self._timers_store,
            self._calendar,
            autosave_interval=config.autosave_interval_seconds,
            session_limit=config.session_limit,
            clock=clock,
        )
        self._events.subscribe(self._timer_service.handle_event)

        self._operations = TimerOperations(self._timer_service, self._calendar)
        self._timer_service.set_current_user(self.resolve_user_id(user_id))

    def _open_store(self, name: str) -> KeyValueStore:
        return open_store(
            name,
            self._config.data_dir,
            lock_backend=self._config.lock_backend,
            retry_delay=self._config.lock_retry_delay_ms / 1000,
            max_attempts=self._config.lock_max_attempts,
        )

    def resolve_user_id(self, override: str | None = None) -> str | None:
        """Pick the user scope: override, signed-in user, then the configured default."""
        return override or self._calendar.get_current_user_id() or self._config.default_user_id

    def switch_user(self, user_id: str | None) -> None:
        """Announce a user change to every subscriber."""
        self._events.publish(UserChanged(user_id))

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def calendar(self) -> CalendarPort:
        return self._calendar

    @property
    def timer_service(self) -> TimerService:
        return self._timer_service

    @property
    def operations(self) -> TimerOperations:
        return self._operations

    async def start(self) -> None:
        """Start background work (periodic auto-save)."""
        logger.info("Starting Dingo Track")
        await self._timer_service.start()

    async def stop(self) -> None:
        """Stop background work and flush running timers."""
        await self._timer_service.stop()
        logger.info("Dingo Track stopped")

    async def __aenter__(self) -> "TrackerApp":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
