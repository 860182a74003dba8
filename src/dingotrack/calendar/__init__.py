"""Calendar port and the Google Calendar client."""

from dingotrack.calendar.google import AuthTokens, GoogleCalendarClient
from dingotrack.calendar.port import Calendar, CalendarEvent, CalendarPort

__all__ = [
    "CalendarPort",
    "Calendar",
    "CalendarEvent",
    "GoogleCalendarClient",
    "AuthTokens",
]
