"""Operation surface for UI and automation callers.

Maps operation names (``add_timer``, ``start_stop_timer``, ...) onto the
timer service and returns JSON-serializable dictionaries, so the same
surface serves the CLI and the JSON-lines stdio bridge.

Example:
    ops = TimerOperations(service, calendar)
    result = await ops.execute("add_timer", name="Coding", calendar_id="primary")
    # {"success": True, "timer": {"name": "Coding", "calendarId": "primary"}}
"""

import inspect
import logging
from typing import Any, Awaitable, Callable

from dingotrack.calendar.port import CalendarPort
from dingotrack.errors import RemoteSinkError, TimerError
from dingotrack.timers.alignment import format_duration
from dingotrack.timers.service import TimerService

logger = logging.getLogger(__name__)

OperationHandler = Callable[..., dict[str, Any] | Awaitable[dict[str, Any]]]


class TimerOperations:
    """Named operations over a timer service."""

    def __init__(self, service: TimerService, calendar: CalendarPort | None = None) -> None:
        """Initialize the operation surface.

        Args:
            service: Timer service to operate on.
            calendar: Calendar used by ``list_calendars``.
        """
        self._service = service
        self._calendar = calendar
        self._handlers: dict[str, OperationHandler] = {
            "list_timers": self.list_timers,
            "get_active_timers": self.get_active_timers,
            "add_timer": self.add_timer,
            "save_timer": self.save_timer,
            "delete_timer": self.delete_timer,
            "start_stop_timer": self.start_stop_timer,
            "get_timer_status": self.get_timer_status,
            "get_timer_sessions": self.get_timer_sessions,
            "list_calendars": self.list_calendars,
        }

    def list_operations(self) -> list[str]:
        return sorted(self._handlers)

    async def execute(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        """Run an operation by name.

        Args:
            operation: Operation name.
            **kwargs: Operation arguments.

        Returns:
            ``{"success": True, ...}`` or ``{"success": False, "error": ...}``.
        """
        handler = self._handlers.get(operation)
        if handler is None:
            return {"success": False, "error": f"Unknown operation: {operation}"}

        try:
            inspect.signature(handler).bind(**kwargs)
        except TypeError as e:
            return {"success": False, "error": f"Invalid arguments for {operation}: {e}"}

        try:
            result = handler(**kwargs)
            if inspect.isawaitable(result):
                result = await result
        except (TimerError, RemoteSinkError) as e:
            logger.debug(f"Operation {operation} failed: {e}")
            return {"success": False, "error": str(e), "error_type": type(e).__name__}

        return {"success": True, **result}

    def list_timers(self) -> dict[str, Any]:
        timers = self._service.get_all_timers()
        return {
            "timers": [
                {**timer.to_dict(), "isRunning": self._service.is_timer_active(timer.name)}
                for timer in timers
            ],
        }

    def get_active_timers(self) -> dict[str, Any]:
        return {"active": self._service.get_active_timers()}

    def add_timer(self, name: str, calendar_id: str) -> dict[str, Any]:
        timer = self._service.add_timer(name, calendar_id)
        return {
            "timer": timer.to_dict(),
            "message": f"Added timer '{timer.name}' for calendar '{timer.calendar_id}'.",
        }

    def save_timer(self, name: str, calendar_id: str) -> dict[str, Any]:
        timer = self._service.save_timer(name, calendar_id)
        return {
            "timer": timer.to_dict(),
            "message": f"Saved timer '{timer.name}'.",
        }

    async def delete_timer(self, name: str) -> dict[str, Any]:
        deleted = await self._service.delete_timer(name)
        return {
            "deleted": deleted,
            "message": f"Deleted timer '{name}'." if deleted else f"Timer '{name}' not found.",
        }

    async def start_stop_timer(self, name: str) -> dict[str, Any]:
        result = await self._service.start_stop_timer(name)
        if result.action == "started":
            message = f"Started timer '{name}'."
        else:
            message = f"Stopped timer '{name}'. Duration: {format_duration(result.duration)}."
        return {**result.to_dict(), "message": message}

    def get_timer_status(self, name: str) -> dict[str, Any]:
        status = self._service.get_timer_status(name)
        status["elapsed"] = format_duration(status["elapsedSeconds"] // 60)
        return {"status": status}

    def get_timer_sessions(self, limit: int | None = None) -> dict[str, Any]:
        sessions = self._service.get_timer_sessions()
        if limit is not None:
            sessions = sessions[-limit:] if limit > 0 else []
        return {"sessions": [session.to_dict() for session in sessions]}

    async def list_calendars(self) -> dict[str, Any]:
        """List writable calendars, falling back to the cached list offline."""
        if self._calendar is None:
            return {"calendars": []}

        try:
            calendars = await self._calendar.get_calendars()
        except RemoteSinkError as e:
            get_cached = getattr(self._calendar, "get_cached_calendars", None)
            if get_cached is None:
                raise
            logger.warning(f"Using cached calendars: {e}")
            return {"calendars": [c.to_dict() for c in get_cached()], "cached": True}

        return {"calendars": [c.to_dict() for c in calendars]}
