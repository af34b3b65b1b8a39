"""OAuth2 lifecycle for the Google Calendar connection.

Covers the authorization-code exchange, silent refresh with a safety buffer
and best-effort revocation.  Tokens are always persisted through the
:class:`~tethru.token_store.TokenStore`, so callers only ever hand around
immutable :class:`~tethru.models.CalendarToken` snapshots.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import uuid
from typing import Any, Callable
from urllib.parse import urlencode

import requests

from tethru.models import (
    GOOGLE_AUTH_URL,
    GOOGLE_REVOKE_URL,
    GOOGLE_TOKEN_URL,
    CalendarToken,
    GoogleConfig,
    now_millis,
)
from tethru.state_store import StateStore
from tethru.token_store import TokenStore

logger = logging.getLogger(__name__)

EXPIRY_BUFFER_MS = 5 * 60 * 1000
DEFAULT_EXPIRES_IN_SECONDS = 3600
STATE_META_PREFIX = "calendar_auth_state:"

TokenCallback = Callable[[CalendarToken], None]


class AuthError(RuntimeError):
    """Raised when the calendar credential is missing, invalid or rejected."""


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _coerce_expires_in(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return DEFAULT_EXPIRES_IN_SECONDS
    return seconds if seconds > 0 else DEFAULT_EXPIRES_IN_SECONDS


def _error_description(response: requests.Response, fallback: str) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("error_description", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return fallback


def parse_state(state: str) -> dict[str, Any]:
    """Decode the ``state`` payload without checking its signature.

    Values that are not a base64 JSON object are treated as a legacy bare
    nonce issued by the web flow.
    """
    payload_text = state.split(".", 1)[0]
    try:
        decoded = json.loads(_b64decode(payload_text))
    except (ValueError, binascii.Error):
        return {"nonce": state, "mobile": False, "uid": None}
    if not isinstance(decoded, dict):
        return {"nonce": state, "mobile": False, "uid": None}
    return {
        "nonce": str(decoded.get("nonce", "")),
        "mobile": bool(decoded.get("mobile", False)),
        "uid": decoded.get("uid"),
    }


class OAuthManager:
    def __init__(
        self,
        config: GoogleConfig,
        token_store: TokenStore,
        state_store: StateStore,
        signing_secret: str,
        *,
        session: requests.Session | None = None,
        clock: Callable[[], int] = now_millis,
    ) -> None:
        self.config = config
        self.token_store = token_store
        self.state_store = state_store
        self._signing_key = signing_secret.encode("utf-8")
        self.session = session or requests.Session()
        self._clock = clock

    # Authorization request

    def _sign(self, payload_text: str) -> str:
        digest = hmac.new(self._signing_key, payload_text.encode("ascii"), hashlib.sha256).digest()
        return _b64encode(digest)

    def _encode_state(self, user_id: str, mobile: bool) -> str:
        payload = {"nonce": uuid.uuid4().hex, "mobile": mobile, "uid": user_id}
        payload_text = _b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        return f"{payload_text}.{self._sign(payload_text)}"

    def verify_state_signature(self, state: str) -> bool:
        payload_text, _, signature = state.partition(".")
        if not signature:
            return False
        return hmac.compare_digest(self._sign(payload_text), signature)

    def initiate_auth(self, user_id: str, mobile: bool = False, login_hint: str | None = None) -> str:
        if not self.config.is_configured():
            raise AuthError("Google Calendar client id or redirect URI is not configured.")
        state = self._encode_state(user_id, mobile)
        self.state_store.set_meta(f"{STATE_META_PREFIX}{user_id}", state)
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "response_type": "code",
            "scope": self.config.scope,
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        if login_hint:
            params["login_hint"] = login_hint
        logger.info("Starting calendar authorization for user %s (mobile=%s)", user_id, mobile)
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def mobile_redirect_url(self, error: str | None = None) -> str:
        if error:
            return f"{self.config.mobile_redirect_uri}?{urlencode({'error': error})}"
        return self.config.mobile_redirect_uri

    # Code exchange

    def handle_auth_callback(self, user_id: str, code: str, state: str) -> tuple[CalendarToken, bool]:
        """Validate ``state``, exchange ``code`` and persist the resulting token.

        Returns the token and whether the flow was started from the mobile app.
        The mobile app authorizes in a separate browser context where the
        persisted state is unavailable, so there only the signed state shape is
        checked.
        """
        state_key = f"{STATE_META_PREFIX}{user_id}"
        parsed = parse_state(state)
        is_mobile = parsed["mobile"]
        if is_mobile:
            if not self.verify_state_signature(state) or parsed.get("uid") != user_id:
                raise AuthError("Invalid state parameter - possible CSRF attack")
        else:
            saved_state = self.state_store.get_meta(state_key)
            if saved_state is None or not hmac.compare_digest(saved_state, state):
                raise AuthError("Invalid state parameter - possible CSRF attack")
        self.state_store.delete_meta(state_key)

        payload = self._post_token_endpoint(
            {
                "code": code,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "redirect_uri": self.config.redirect_uri,
                "grant_type": "authorization_code",
            },
            failure_message="Failed to exchange authorization code",
        )
        token = self._token_from_payload(payload, fallback_refresh_token="")
        self.token_store.save(user_id, token)
        logger.info("Calendar authorization completed for user %s", user_id)
        return token, is_mobile

    def _post_token_endpoint(self, data: dict[str, str], *, failure_message: str) -> dict[str, Any]:
        try:
            response = self.session.post(
                GOOGLE_TOKEN_URL,
                data=data,
                headers={"Accept": "application/json"},
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise AuthError(f"{failure_message}: {exc}") from exc
        if not response.ok:
            raise AuthError(_error_description(response, failure_message))
        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError("Google OAuth token endpoint returned invalid JSON") from exc
        if not isinstance(payload, dict) or not str(payload.get("access_token", "")).strip():
            raise AuthError("Google OAuth token response is missing an access_token")
        return payload

    def _token_from_payload(self, payload: dict[str, Any], *, fallback_refresh_token: str) -> CalendarToken:
        expires_in = _coerce_expires_in(payload.get("expires_in"))
        refresh_token = str(payload.get("refresh_token") or "").strip() or fallback_refresh_token
        return CalendarToken(
            access_token=str(payload["access_token"]).strip(),
            refresh_token=refresh_token,
            expiry=self._clock() + expires_in * 1000,
        )

    # Token lifecycle

    def is_expired(self, token: CalendarToken, now_ms: int | None = None) -> bool:
        now_ms = self._clock() if now_ms is None else now_ms
        return now_ms >= token.expiry - EXPIRY_BUFFER_MS

    def refresh(self, user_id: str, token: CalendarToken) -> CalendarToken:
        if not token.refresh_token:
            raise AuthError("No refresh token available; calendar must be reconnected.")
        payload = self._post_token_endpoint(
            {
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "refresh_token": token.refresh_token,
                "grant_type": "refresh_token",
            },
            failure_message="Failed to refresh token",
        )
        new_token = self._token_from_payload(payload, fallback_refresh_token=token.refresh_token)
        self.token_store.save(user_id, new_token)
        logger.debug("Refreshed calendar access token for user %s", user_id)
        return new_token

    def get_valid_access_token(
        self,
        user_id: str,
        token: CalendarToken,
        on_refreshed: TokenCallback | None = None,
    ) -> tuple[str, CalendarToken]:
        if not self.is_expired(token):
            return token.access_token, token
        new_token = self.refresh(user_id, token)
        if on_refreshed is not None:
            on_refreshed(new_token)
        return new_token.access_token, new_token

    def disconnect(self, user_id: str, token: CalendarToken | None) -> None:
        if token is not None and token.access_token:
            try:
                response = self.session.post(
                    GOOGLE_REVOKE_URL,
                    params={"token": token.access_token},
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                    timeout=self.config.timeout_seconds,
                )
                if not response.ok:
                    logger.warning(
                        "Token revocation for user %s returned HTTP %s", user_id, response.status_code
                    )
            except requests.RequestException as exc:
                # Consent may already be revoked on the provider side.
                logger.warning("Token revocation for user %s failed: %s", user_id, exc)
        self.token_store.delete(user_id)
        self.state_store.delete_meta(f"{STATE_META_PREFIX}{user_id}")
