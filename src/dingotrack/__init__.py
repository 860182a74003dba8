"""Dingo Track - start/stop timers mirrored to Google Calendar."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("dingotrack")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from dingotrack.app import TrackerApp
from dingotrack.timers import TimerService

__all__ = ["TrackerApp", "TimerService"]
