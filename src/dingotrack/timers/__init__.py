"""Timer lifecycle, session history and calendar alignment.

Example:
    from dingotrack.timers import TimerService

    service = TimerService(store, calendar)
    service.set_current_user("user_1234")
    service.add_timer("Coding", "primary")
    result = await service.start_stop_timer("Coding")
"""

from dingotrack.timers.alignment import align_interval, duration_minutes, format_duration
from dingotrack.timers.service import TimerService
from dingotrack.timers.types import (
    ActiveTimer,
    StartStopResult,
    Timer,
    TimerSession,
)

__all__ = [
    "TimerService",
    "Timer",
    "ActiveTimer",
    "TimerSession",
    "StartStopResult",
    "align_interval",
    "duration_minutes",
    "format_duration",
]
