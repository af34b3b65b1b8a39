from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import requests

from tethru.models import DEFAULT_CALENDAR_ID, GOOGLE_CALENDAR_API_BASE, CalendarToken
from tethru.oauth import OAuthManager, TokenCallback

logger = logging.getLogger(__name__)

NOT_FOUND_STATUS_CODES = {404, 410}


class CalendarApiError(RuntimeError):
    """Raised when the Calendar API answers with a non-2xx status."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        # Token in effect when the request failed, if a refresh happened first.
        self.token: CalendarToken | None = None
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")

    @property
    def is_not_found(self) -> bool:
        return self.status_code in NOT_FOUND_STATUS_CODES


def _provider_error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:300]
        if isinstance(error_payload, str) and error_payload.strip():
            return error_payload.strip()[:300]
    text = (response.text or "").strip()
    if text:
        return " ".join(text.split())[:300]
    return "Calendar API request failed"


class GoogleCalendarClient:
    """Thin Calendar v3 REST wrapper bound to one user.

    Every operation takes the caller's current token and returns
    ``(result, token)``; the returned token differs from the input only when
    a refresh happened along the way.
    """

    def __init__(
        self,
        oauth: OAuthManager,
        user_id: str,
        *,
        calendar_id: str = DEFAULT_CALENDAR_ID,
        session: requests.Session | None = None,
        base_url: str = GOOGLE_CALENDAR_API_BASE,
        timeout_seconds: int = 30,
        on_token_refreshed: TokenCallback | None = None,
    ) -> None:
        self.oauth = oauth
        self.user_id = user_id
        self.calendar_id = calendar_id
        self.session = session or oauth.session
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.on_token_refreshed = on_token_refreshed

    def _events_path(self, calendar_id: str | None, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(calendar_id or self.calendar_id, safe='')}/events"
        if event_id is not None:
            path = f"{path}/{quote(event_id, safe='')}"
        return path

    def _send(
        self,
        method: str,
        path: str,
        access_token: str,
        body: dict[str, Any] | None,
        params: Any,
    ) -> requests.Response:
        try:
            return self.session.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=body,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise CalendarApiError(status_code=0, message=str(exc)) from exc

    def _request(
        self,
        method: str,
        path: str,
        token: CalendarToken,
        body: dict[str, Any] | None = None,
        params: Any = None,
    ) -> tuple[dict[str, Any], CalendarToken]:
        access_token, token = self.oauth.get_valid_access_token(
            self.user_id, token, self.on_token_refreshed
        )
        response = self._send(method, path, access_token, body, params)

        if response.status_code == 401:
            # The provider is authoritative even if our expiry check passed.
            logger.info("Calendar API rejected the access token; forcing refresh for user %s", self.user_id)
            token = self.oauth.refresh(self.user_id, token)
            if self.on_token_refreshed is not None:
                self.on_token_refreshed(token)
            response = self._send(method, path, token.access_token, body, params)

        if not 200 <= response.status_code < 300:
            error = CalendarApiError(
                status_code=response.status_code,
                message=_provider_error_message(response),
            )
            error.token = token
            raise error

        if response.status_code == 204 or not response.content:
            return {}, token
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarApiError(
                status_code=response.status_code,
                message="Calendar API returned invalid JSON for a successful response",
            ) from exc
        return (payload if isinstance(payload, dict) else {}), token

    def create_event(
        self, token: CalendarToken, event: dict[str, Any], calendar_id: str | None = None
    ) -> tuple[str, CalendarToken]:
        payload, token = self._request("POST", self._events_path(calendar_id), token, event)
        event_id = str(payload.get("id", "")).strip()
        if not event_id:
            raise CalendarApiError(status_code=200, message="Created event has no id")
        return event_id, token

    def update_event(
        self,
        token: CalendarToken,
        event_id: str,
        event: dict[str, Any],
        calendar_id: str | None = None,
    ) -> tuple[dict[str, Any], CalendarToken]:
        return self._request("PUT", self._events_path(calendar_id, event_id), token, event)

    def delete_event(
        self, token: CalendarToken, event_id: str, calendar_id: str | None = None
    ) -> tuple[bool, CalendarToken]:
        """Delete an event; returns False when it was already gone."""
        try:
            _, token = self._request("DELETE", self._events_path(calendar_id, event_id), token)
        except CalendarApiError as exc:
            if exc.is_not_found:
                logger.debug("Event %s already deleted; treating as success", event_id)
                return False, exc.token or token
            raise
        return True, token

    def get_event(
        self, token: CalendarToken, event_id: str, calendar_id: str | None = None
    ) -> tuple[dict[str, Any] | None, CalendarToken]:
        try:
            payload, token = self._request("GET", self._events_path(calendar_id, event_id), token)
        except CalendarApiError as exc:
            if exc.is_not_found:
                return None, exc.token or token
            raise
        if payload.get("status") == "cancelled":
            return None, token
        return payload, token

    def list_calendars(self, token: CalendarToken) -> tuple[list[dict[str, Any]], CalendarToken]:
        payload, token = self._request("GET", "/users/me/calendarList", token)
        items = payload.get("items", [])
        return (items if isinstance(items, list) else []), token

    def find_tagged_event(
        self,
        token: CalendarToken,
        private_properties: dict[str, str],
        calendar_id: str | None = None,
    ) -> tuple[dict[str, Any] | None, CalendarToken]:
        """Return the first live event carrying all ``private_properties``."""
        params = [
            ("privateExtendedProperty", f"{key}={value}")
            for key, value in sorted(private_properties.items())
        ]
        params.append(("maxResults", "5"))
        payload, token = self._request("GET", self._events_path(calendar_id), token, params=params)
        for item in payload.get("items", []) or []:
            if isinstance(item, dict) and item.get("status") != "cancelled" and item.get("id"):
                return item, token
        return None, token
