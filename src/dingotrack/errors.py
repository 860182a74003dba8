"""Error types for Dingo Track.

Configuration errors (``TimerError`` subclasses) are surfaced to callers.
``RemoteSinkError`` is raised by calendar clients and swallowed by the timer
service when mirroring a finished session. ``PersistenceError`` covers store
failures, which the stores log and report rather than raise.
"""


class DingoTrackError(Exception):
    """Base class for all Dingo Track errors."""


class TimerError(DingoTrackError):
    """A timer operation was rejected."""


class NotFoundError(TimerError):
    """The referenced timer is not configured."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Timer '{name}' not found")
        self.name = name


class DuplicateNameError(TimerError):
    """A timer with the same name already exists."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Timer '{name}' already exists")
        self.name = name


class NoCurrentUserError(TimerError):
    """A mutating operation was attempted without a user scope."""

    def __init__(self) -> None:
        super().__init__("No user is currently authenticated")


class InvalidTimerError(TimerError, ValueError):
    """Timer input failed validation (e.g. an empty name)."""


class RemoteSinkError(DingoTrackError):
    """The calendar service failed or rejected a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(RemoteSinkError):
    """No usable Google credentials or tokens."""


class PersistenceError(DingoTrackError):
    """Reading or writing a store file failed."""


class LockTimeoutError(PersistenceError):
    """The store lock could not be acquired within the attempt budget."""
