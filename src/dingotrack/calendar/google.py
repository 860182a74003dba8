"""Google Calendar client implementing the calendar port.

Talks to the Calendar v3 REST API with httpx. OAuth tokens, the list of
writable calendars and the signed-in user are kept in a key-value store so
other processes (e.g. the stdio bridge) can read them.

API Documentation: https://developers.google.com/calendar/api/v3/reference
"""

import hashlib
import logging
import time
from datetime import datetime
from typing import Any
from urllib.parse import quote, urlencode

import httpx
from pydantic import BaseModel, Field, ValidationError

from dingotrack.calendar.port import Calendar, CalendarEvent
from dingotrack.errors import AuthenticationError, RemoteSinkError
from dingotrack.events import EventBus, UserChanged
from dingotrack.storage.store import KeyValueStore

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
CALENDAR_API_URL = "https://www.googleapis.com/calendar/v3"
SCOPES = (
    "https://www.googleapis.com/auth/calendar.readonly "
    "https://www.googleapis.com/auth/calendar.events"
)

# Refresh access tokens this long before they expire
TOKEN_REFRESH_MARGIN_MS = 5 * 60 * 1000

# Store keys
TOKENS_KEY = "googleTokens"
CALENDARS_KEY = "calendars"
CURRENT_USER_KEY = "currentUserId"

WRITABLE_ROLES = ("owner", "writer")


def _now_ms() -> int:
    return int(time.time() * 1000)


class AuthTokens(BaseModel):
    """OAuth tokens as stored on disk.

    Attributes:
        access_token: Bearer token for API calls.
        refresh_token: Long-lived token used to mint new access tokens.
        scope: Granted scopes.
        token_type: Usually "Bearer".
        expiry_date: Access token expiry as a Unix timestamp in ms.
    """

    access_token: str
    refresh_token: str | None = None
    scope: str = ""
    token_type: str = "Bearer"
    expiry_date: int | None = None

    def expires_soon(self, now_ms: int | None = None) -> bool:
        """Check if the access token is expired or about to expire."""
        if self.expiry_date is None:
            return True
        now_ms = now_ms if now_ms is not None else _now_ms()
        return self.expiry_date < now_ms + TOKEN_REFRESH_MARGIN_MS


class TokenResponse(BaseModel):
    """Body of a successful OAuth token endpoint response."""

    access_token: str = Field(..., min_length=1)
    refresh_token: str | None = None
    scope: str = ""
    token_type: str = "Bearer"
    expires_in: int = 3600

    def expiry_date(self, now_ms: int | None = None) -> int:
        """Absolute expiry as a Unix timestamp in ms."""
        now_ms = now_ms if now_ms is not None else _now_ms()
        return now_ms + self.expires_in * 1000


def user_id_from_calendar(calendar_id: str) -> str:
    """Derive a stable, non-identifying user ID from a calendar ID."""
    digest = hashlib.sha256(calendar_id.encode("utf-8")).hexdigest()
    return f"user_{digest[:12]}"


def _error_message_from_body(body: Any) -> str | None:
    """Extract Google's error message from a decoded response body."""
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error)
    if isinstance(error, str):
        description = body.get("error_description")
        return f"{error}: {description}" if description else error
    return None


def _error_message(response: httpx.Response) -> str:
    """Extract Google's error message from a failed response."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    return _error_message_from_body(body) or response.text[:200]


class GoogleCalendarClient:
    """Calendar port backed by the Google Calendar API.

    Example:
        client = GoogleCalendarClient(store, client_id, client_secret)
        url = client.get_auth_url("http://127.0.0.1:8085/callback")
        # ... user consents, browser delivers ?code=...
        await client.exchange_code(code, "http://127.0.0.1:8085/callback")
        calendars = await client.get_calendars()
    """

    def __init__(
        self,
        store: KeyValueStore,
        client_id: str = "",
        client_secret: str = "",
        http_client: httpx.AsyncClient | None = None,
        timezone_name: str | None = None,
        events: EventBus | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the client.

        Args:
            store: Store for tokens, calendars and the current user.
            client_id: OAuth client ID.
            client_secret: OAuth client secret.
            http_client: Shared httpx client (a new one per request if None).
            timezone_name: IANA timezone sent with events; offsets only if None.
            events: Bus on which user changes are published.
            timeout: Request timeout in seconds.
        """
        self._store = store
        self._client_id = client_id
        self._client_secret = client_secret
        self._http = http_client
        self._timezone_name = timezone_name
        self._events = events
        self._timeout = timeout
        self._current_user_id: str | None = None

    # HTTP

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """Send a request and return the decoded JSON body.

        Raises:
            RemoteSinkError: On HTTP errors, connection errors or bad JSON.
        """
        try:
            if self._http is not None:
                response = await self._http.request(method, url, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise RemoteSinkError(f"HTTP {status}: {_error_message(e.response)}", status) from e
        except httpx.RequestError as e:
            raise RemoteSinkError(f"Connection error: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise RemoteSinkError(f"Invalid JSON response: {response.text[:200]}") from e

    async def _api(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Call the Calendar API with a valid bearer token."""
        token = await self.get_valid_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        return await self._request(method, f"{CALENDAR_API_URL}{path}", headers=headers, **kwargs)

    # Tokens

    def _require_credentials(self) -> None:
        if not self._client_id or not self._client_secret:
            raise AuthenticationError(
                "Google client credentials not configured. "
                "Set DINGOTRACK_GOOGLE_CLIENT_ID and DINGOTRACK_GOOGLE_CLIENT_SECRET."
            )

    def get_auth_url(self, redirect_uri: str) -> str:
        """Build the consent URL the user opens in a browser."""
        params = {
            "client_id": self._client_id,
            "redirect_uri": redirect_uri,
            "scope": SCOPES,
            "response_type": "code",
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def get_stored_tokens(self) -> AuthTokens | None:
        raw = self._store.get(TOKENS_KEY)
        if not raw:
            return None
        try:
            return AuthTokens.model_validate(raw)
        except ValidationError:
            logger.warning("Ignoring malformed stored Google tokens")
            return None

    def store_tokens(self, tokens: AuthTokens) -> None:
        self._store.set(TOKENS_KEY, tokens.model_dump(mode="json"))

    async def _token_request(self, form: dict[str, Any]) -> TokenResponse:
        """POST to the token endpoint and validate the response.

        Raises:
            RemoteSinkError: On HTTP or connection errors.
            AuthenticationError: If the response carries no access token.
        """
        data = await self._request("POST", GOOGLE_TOKEN_URL, data=form)
        try:
            return TokenResponse.model_validate(data)
        except ValidationError as e:
            message = _error_message_from_body(data) or "missing access_token"
            raise AuthenticationError(f"Invalid token response: {message}") from e

    async def exchange_code(self, code: str, redirect_uri: str) -> AuthTokens:
        """Exchange an authorization code and sign the user in.

        Args:
            code: Authorization code from the consent redirect.
            redirect_uri: Redirect URI used to obtain the code.

        Returns:
            The stored tokens.
        """
        self._require_credentials()
        response = await self._token_request({
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        })

        tokens = AuthTokens(
            access_token=response.access_token,
            refresh_token=response.refresh_token,
            scope=response.scope,
            token_type=response.token_type,
            expiry_date=response.expiry_date(),
        )
        self.store_tokens(tokens)

        user_id = await self.get_user_id()
        self.set_current_user(user_id)
        logger.info(f"Signed in to Google Calendar as {user_id}")
        return tokens

    async def refresh_tokens(self) -> AuthTokens:
        """Mint a new access token from the refresh token.

        Raises:
            AuthenticationError: If no refresh token is stored.
        """
        tokens = self.get_stored_tokens()
        if tokens is None or not tokens.refresh_token:
            raise AuthenticationError("No refresh token available")
        self._require_credentials()

        response = await self._token_request({
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "refresh_token": tokens.refresh_token,
            "grant_type": "refresh_token",
        })

        new_tokens = tokens.model_copy(update={
            "access_token": response.access_token,
            "expiry_date": response.expiry_date(),
            "refresh_token": response.refresh_token or tokens.refresh_token,
        })
        self.store_tokens(new_tokens)
        logger.debug("Refreshed Google access token")
        return new_tokens

    async def get_valid_token(self) -> str:
        """Get an access token, refreshing it if it is about to expire.

        Raises:
            AuthenticationError: If the user is not signed in.
        """
        tokens = self.get_stored_tokens()
        if tokens is None:
            raise AuthenticationError("Not signed in to Google Calendar")
        if tokens.expires_soon():
            tokens = await self.refresh_tokens()
        return tokens.access_token

    def is_authenticated(self) -> bool:
        return self.get_stored_tokens() is not None

    # Current user

    def get_current_user_id(self) -> str | None:
        if self._current_user_id is None:
            self._current_user_id = self._store.get(CURRENT_USER_KEY)
        return self._current_user_id

    def set_current_user(self, user_id: str | None) -> None:
        """Set the signed-in user and publish the change."""
        changed = user_id != self.get_current_user_id()
        self._current_user_id = user_id

        if user_id:
            self._store.set(CURRENT_USER_KEY, user_id)
        else:
            self._store.delete(CURRENT_USER_KEY)

        if changed and self._events is not None:
            self._events.publish(UserChanged(user_id))

    async def get_user_id(self) -> str:
        """Derive the user ID from the primary (or first) calendar."""
        calendars = await self.get_calendars()
        primary = next((c for c in calendars if c.primary), None)
        if primary is not None:
            return user_id_from_calendar(primary.id)
        if calendars:
            return user_id_from_calendar(calendars[0].id)
        return f"user_{_now_ms()}"

    def logout(self) -> None:
        """Forget tokens and sign the user out."""
        self._store.delete(TOKENS_KEY)
        self.set_current_user(None)
        logger.info("Signed out of Google Calendar")

    # Calendars and events

    async def get_calendars(self) -> list[Calendar]:
        """List writable calendars and cache them in the store."""
        data = await self._api("GET", "/users/me/calendarList")

        calendars = [
            Calendar(
                id=item["id"],
                name=item.get("summary", item["id"]),
                primary=bool(item.get("primary", False)),
                access_role=item.get("accessRole", ""),
            )
            for item in data.get("items", [])
            if item.get("accessRole") in WRITABLE_ROLES
        ]

        self._store.set(CALENDARS_KEY, [c.to_dict() for c in calendars])
        return calendars

    def get_cached_calendars(self) -> list[Calendar]:
        """Calendars from the last successful listing."""
        raw = self._store.get(CALENDARS_KEY, [])
        try:
            return [Calendar.model_validate(item) for item in raw]
        except (ValidationError, TypeError):
            logger.warning("Ignoring malformed cached calendars")
            return []

    def _event_time(self, value: datetime) -> dict[str, str]:
        body = {"dateTime": value.isoformat()}
        if self._timezone_name:
            body["timeZone"] = self._timezone_name
        return body

    async def create_event(self, calendar_id: str, event: CalendarEvent) -> CalendarEvent:
        """Create an event on a calendar.

        Args:
            calendar_id: Target calendar.
            event: Summary, start and end of the event.

        Returns:
            The event as created by Google.
        """
        logger.debug(f"Creating calendar event on {calendar_id}: {event.summary}")
        data = await self._api(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            json={
                "summary": event.summary,
                "start": self._event_time(event.start),
                "end": self._event_time(event.end),
            },
        )

        return CalendarEvent(
            id=data.get("id"),
            summary=data.get("summary", event.summary),
            start=data.get("start", {}).get("dateTime", event.start),
            end=data.get("end", {}).get("dateTime", event.end),
            calendar_id=calendar_id,
        )
