"""HTTP gateway to the remote calendar service.

This module provides:
- RemoteGateway: Protocol the sync core talks to
- GatewayClient: httpx implementation against a Calendar v3 shaped API
- EventsPage: One page of event deltas
- The gateway error hierarchy

Payloads are validated at this boundary. Every item must carry a known
``kind`` (``calendar#event`` or ``calendar#calendarListEntry``); anything
else raises MalformedPayloadError instead of leaking loose dictionaries
into the sync core.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import quote

import httpx

from calreplica.client.models import CalendarDelta, RemoteEvent
from calreplica.core.config import GatewayConfig, SyncWindow

if TYPE_CHECKING:
    from calreplica.client.credentials import CredentialProvider

logger = logging.getLogger(__name__)

EVENT_KIND = "calendar#event"
CALENDAR_KIND = "calendar#calendarListEntry"
PAGE_SIZE = 250


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BadRequestError(APIError):
    """Request rejected as invalid (400)."""


class AuthenticationError(APIError):
    """Authentication failed (401)."""


class PermissionDeniedError(APIError):
    """Access to the resource is forbidden (403)."""


class NotFoundError(APIError):
    """Resource not found (404)."""


class GoneError(APIError):
    """Resource no longer exists (410)."""


class CursorExpiredError(GoneError):
    """Incremental sync cursor rejected; a full resync is required."""


class PreconditionFailedError(APIError):
    """Version precondition (If-Match) failed (412)."""


class RateLimitedError(APIError):
    """Too many requests (429)."""


class ServerError(APIError):
    """Remote service failure (5xx)."""


class NetworkError(APIError):
    """Transport failure or timeout; no HTTP status available."""


class MalformedPayloadError(APIError):
    """Response body does not match an expected shape."""


@dataclass
class EventsPage:
    """Result of one list_changed_events call.

    Attributes:
        events: Changed events, cancelled ones included.
        next_cursor: Cursor for the next incremental sync (last page only).
        next_page_token: Token of the following page, if any.
    """

    events: list[RemoteEvent] = field(default_factory=list)
    next_cursor: str | None = None
    next_page_token: str | None = None

    @property
    def has_more(self) -> bool:
        return self.next_page_token is not None


class RemoteGateway(Protocol):
    """Operations the sync core needs from the remote service."""

    def list_changed_calendars(self, account_id: str) -> list[CalendarDelta]: ...

    def list_changed_events(
        self,
        account_id: str,
        calendar_id: str,
        cursor: str | None = None,
        page_token: str | None = None,
        window: SyncWindow | None = None,
    ) -> EventsPage: ...

    def create_event(
        self, account_id: str, calendar_id: str, payload: Mapping[str, Any]
    ) -> RemoteEvent: ...

    def update_event(
        self,
        account_id: str,
        calendar_id: str,
        event_id: str,
        payload: Mapping[str, Any],
        base_version: str | None = None,
    ) -> RemoteEvent: ...

    def delete_event(self, account_id: str, calendar_id: str, event_id: str) -> None: ...


def parse_event(data: Any) -> RemoteEvent:
    """Validate and normalize an event resource.

    Raises:
        MalformedPayloadError: If the resource is not a well-formed event.
    """
    if not isinstance(data, Mapping):
        raise MalformedPayloadError(f"Expected an object, got {type(data).__name__}")
    kind = data.get("kind")
    if kind != EVENT_KIND:
        raise MalformedPayloadError(f"Unexpected resource kind: {kind!r}")
    if not data.get("id"):
        raise MalformedPayloadError("Event without id")
    try:
        event = RemoteEvent.from_api(data)
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedPayloadError(f"Invalid event {data.get('id')}: {e}") from e
    if not event.cancelled and (event.start is None or event.end is None):
        raise MalformedPayloadError(f"Event {event.id} has no start/end")
    return event


def parse_calendar(data: Any) -> CalendarDelta:
    """Validate and normalize a calendar list entry."""
    if not isinstance(data, Mapping):
        raise MalformedPayloadError(f"Expected an object, got {type(data).__name__}")
    kind = data.get("kind")
    if kind != CALENDAR_KIND:
        raise MalformedPayloadError(f"Unexpected resource kind: {kind!r}")
    if not data.get("id"):
        raise MalformedPayloadError("Calendar without id")
    return CalendarDelta.from_api(data)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message", response.reason_phrase))
    if isinstance(error, str):
        return body.get("error_description", error)
    return response.reason_phrase


class GatewayClient:
    """HTTP client for a Calendar v3 shaped API, shared by all accounts."""

    def __init__(
        self,
        config: GatewayConfig,
        credentials: CredentialProvider,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            config: Connection settings.
            credentials: Supplies and refreshes per-account access tokens.
            transport: Optional httpx transport (tests, proxies).
        """
        self._config = config
        self._credentials = credentials
        self._client = httpx.Client(
            base_url=config.base_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> GatewayClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        status = response.status_code
        if status < 400:
            return response
        detail = _error_detail(response)
        if status == 400:
            raise BadRequestError(detail, 400)
        if status == 401:
            raise AuthenticationError(detail, 401)
        if status == 403:
            raise PermissionDeniedError(detail, 403)
        if status == 404:
            raise NotFoundError(detail, 404)
        if status == 410:
            raise GoneError(detail, 410)
        if status == 412:
            raise PreconditionFailedError(detail, 412)
        if status == 429:
            raise RateLimitedError(detail, 429)
        if status >= 500:
            raise ServerError(detail, status)
        raise APIError(detail, status)

    def _send(self, method: str, url: str, token: str, **kwargs: Any) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}", **kwargs.pop("headers", {})}
        try:
            return self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request timed out: {e}") from e
        except httpx.RequestError as e:
            raise NetworkError(f"Request failed: {e}") from e

    def _request(self, account_id: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send an authorized request, refreshing the token once on 401."""
        token = self._credentials.get_valid_access_token(account_id)
        response = self._send(method, url, token, **kwargs)
        if response.status_code == 401:
            logger.info(f"Access token rejected for {account_id}, refreshing")
            token = self._credentials.refresh(account_id)
            response = self._send(method, url, token, **kwargs)
        return self._handle_response(response)

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise MalformedPayloadError(f"Response is not JSON: {e}") from e

    @staticmethod
    def _events_url(calendar_id: str, event_id: str | None = None) -> str:
        url = f"/calendars/{quote(calendar_id, safe='')}/events"
        if event_id is not None:
            url += f"/{quote(event_id, safe='')}"
        return url

    # === Health check ===

    def health_check(self) -> bool:
        """Check whether the remote service is reachable.

        Returns:
            True if the service answered without a server error.
        """
        try:
            response = self._client.head("/")
            return response.status_code < 500
        except httpx.RequestError:
            return False

    # === Calendars ===

    def list_changed_calendars(self, account_id: str) -> list[CalendarDelta]:
        """List the account's calendars, deleted entries included."""
        calendars: list[CalendarDelta] = []
        page_token: str | None = None
        while True:
            params: dict[str, str] = {"showDeleted": "true", "maxResults": str(PAGE_SIZE)}
            if page_token:
                params["pageToken"] = page_token
            data = self._json(
                self._request(account_id, "GET", "/users/me/calendarList", params=params)
            )
            if not isinstance(data, Mapping):
                raise MalformedPayloadError("Calendar list response is not an object")
            calendars.extend(parse_calendar(item) for item in data.get("items", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return calendars

    # === Events ===

    def list_changed_events(
        self,
        account_id: str,
        calendar_id: str,
        cursor: str | None = None,
        page_token: str | None = None,
        window: SyncWindow | None = None,
    ) -> EventsPage:
        """Fetch one page of event changes.

        With a cursor only changes since that cursor are returned; without
        one the calendar is listed in full (restricted to ``window``).

        Raises:
            CursorExpiredError: If the remote side rejected the cursor.
        """
        params: dict[str, str] = {
            "showDeleted": "true",
            "singleEvents": "false",
            "maxResults": str(PAGE_SIZE),
        }
        if cursor:
            params["syncToken"] = cursor
        elif window is not None:
            params["timeMin"] = window.start.isoformat()
            params["timeMax"] = window.end.isoformat()
        if page_token:
            params["pageToken"] = page_token

        try:
            response = self._request(
                account_id, "GET", self._events_url(calendar_id), params=params
            )
        except GoneError as e:
            if cursor:
                raise CursorExpiredError(str(e), 410) from e
            raise

        data = self._json(response)
        if not isinstance(data, Mapping):
            raise MalformedPayloadError("Events response is not an object")
        return EventsPage(
            events=[parse_event(item) for item in data.get("items", [])],
            next_cursor=data.get("nextSyncToken"),
            next_page_token=data.get("nextPageToken"),
        )

    def create_event(
        self, account_id: str, calendar_id: str, payload: Mapping[str, Any]
    ) -> RemoteEvent:
        """Create an event; the remote side assigns its id."""
        response = self._request(
            account_id, "POST", self._events_url(calendar_id), json=dict(payload)
        )
        return parse_event(self._json(response))

    def update_event(
        self,
        account_id: str,
        calendar_id: str,
        event_id: str,
        payload: Mapping[str, Any],
        base_version: str | None = None,
    ) -> RemoteEvent:
        """Replace an event.

        Args:
            base_version: When given, sent as ``If-Match`` so the remote side
                rejects the write if the event changed since.

        Raises:
            PreconditionFailedError: If ``base_version`` is stale.
        """
        headers = {"If-Match": base_version} if base_version else {}
        response = self._request(
            account_id,
            "PUT",
            self._events_url(calendar_id, event_id),
            json=dict(payload),
            headers=headers,
        )
        return parse_event(self._json(response))

    def delete_event(self, account_id: str, calendar_id: str, event_id: str) -> None:
        """Delete an event."""
        self._request(account_id, "DELETE", self._events_url(calendar_id, event_id))
