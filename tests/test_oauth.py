import tempfile
import unittest
from pathlib import Path
from unittest import mock
from urllib.parse import parse_qs, urlparse

import requests

from tethru.models import GOOGLE_REVOKE_URL, GOOGLE_TOKEN_URL, CalendarToken, GoogleConfig
from tethru.oauth import STATE_META_PREFIX, AuthError, OAuthManager, parse_state
from tethru.state_store import StateStore
from tethru.token_store import TokenStore

NOW_MS = 1_700_000_000_000


def _response(status_code: int = 200, payload: object = None) -> mock.Mock:
    response = mock.Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response


class OAuthManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.state_store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.token_store = TokenStore(self.state_store, "test-secret")
        self.session = mock.Mock()
        self.oauth = OAuthManager(
            GoogleConfig(client_id="cid", client_secret="csecret", redirect_uri="https://app.example/cb"),
            self.token_store,
            self.state_store,
            "test-secret",
            session=self.session,
            clock=lambda: NOW_MS,
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _state_from_url(self, url: str) -> str:
        return parse_qs(urlparse(url).query)["state"][0]

    def test_initiate_auth_builds_offline_consent_url(self) -> None:
        url = self.oauth.initiate_auth("u1", login_hint="ada@example.com")
        query = parse_qs(urlparse(url).query)
        self.assertEqual(query["client_id"], ["cid"])
        self.assertEqual(query["access_type"], ["offline"])
        self.assertEqual(query["prompt"], ["consent"])
        self.assertEqual(query["response_type"], ["code"])
        self.assertEqual(query["login_hint"], ["ada@example.com"])
        state = query["state"][0]
        self.assertEqual(self.state_store.get_meta(f"{STATE_META_PREFIX}u1"), state)
        parsed = parse_state(state)
        self.assertFalse(parsed["mobile"])
        self.assertEqual(parsed["uid"], "u1")

    def test_initiate_auth_requires_client_id(self) -> None:
        self.oauth.config = GoogleConfig(client_id="")
        with self.assertRaises(AuthError):
            self.oauth.initiate_auth("u1")

    def test_initiate_auth_requires_redirect_uri(self) -> None:
        self.oauth.config = GoogleConfig(client_id="cid", redirect_uri="")
        with self.assertRaises(AuthError):
            self.oauth.initiate_auth("u1")
        self.assertIsNone(self.state_store.get_meta(f"{STATE_META_PREFIX}u1"))

    def test_callback_exchanges_code_and_persists_token(self) -> None:
        state = self._state_from_url(self.oauth.initiate_auth("u1"))
        self.session.post.return_value = _response(
            payload={"access_token": "at", "refresh_token": "rt", "expires_in": 3600}
        )

        token, is_mobile = self.oauth.handle_auth_callback("u1", "code-1", state)

        self.assertFalse(is_mobile)
        self.assertEqual(token, CalendarToken(access_token="at", refresh_token="rt", expiry=NOW_MS + 3_600_000))
        self.assertEqual(self.token_store.load("u1"), token)
        self.assertIsNone(self.state_store.get_meta(f"{STATE_META_PREFIX}u1"))
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], GOOGLE_TOKEN_URL)
        self.assertEqual(kwargs["data"]["grant_type"], "authorization_code")
        self.assertEqual(kwargs["data"]["code"], "code-1")

    def test_callback_rejects_mismatched_state(self) -> None:
        self.oauth.initiate_auth("u1")
        with self.assertRaises(AuthError):
            self.oauth.handle_auth_callback("u1", "code-1", "forged")
        self.session.post.assert_not_called()

    def test_mobile_callback_verifies_signature_without_persisted_state(self) -> None:
        state = self._state_from_url(self.oauth.initiate_auth("u1", mobile=True))
        self.state_store.delete_meta(f"{STATE_META_PREFIX}u1")
        self.session.post.return_value = _response(payload={"access_token": "at", "expires_in": 60})

        token, is_mobile = self.oauth.handle_auth_callback("u1", "code-1", state)

        self.assertTrue(is_mobile)
        self.assertEqual(token.refresh_token, "")
        self.assertEqual(token.expiry, NOW_MS + 60_000)

    def test_mobile_callback_rejects_state_for_another_user(self) -> None:
        state = self._state_from_url(self.oauth.initiate_auth("u1", mobile=True))
        with self.assertRaises(AuthError):
            self.oauth.handle_auth_callback("u2", "code-1", state)

    def test_token_endpoint_error_surfaces_description(self) -> None:
        state = self._state_from_url(self.oauth.initiate_auth("u1"))
        self.session.post.return_value = _response(
            400, {"error": "invalid_grant", "error_description": "Bad Request"}
        )
        with self.assertRaisesRegex(AuthError, "Bad Request"):
            self.oauth.handle_auth_callback("u1", "code-1", state)

    def test_is_expired_applies_five_minute_buffer(self) -> None:
        soon = CalendarToken(access_token="a", expiry=NOW_MS + 4 * 60 * 1000)
        later = CalendarToken(access_token="a", expiry=NOW_MS + 6 * 60 * 1000)
        self.assertTrue(self.oauth.is_expired(soon))
        self.assertFalse(self.oauth.is_expired(later))

    def test_refresh_carries_refresh_token_forward(self) -> None:
        self.session.post.return_value = _response(payload={"access_token": "new", "expires_in": 3600})
        old = CalendarToken(access_token="old", refresh_token="rt", expiry=NOW_MS)

        new_token = self.oauth.refresh("u1", old)

        self.assertEqual(new_token.access_token, "new")
        self.assertEqual(new_token.refresh_token, "rt")
        self.assertEqual(self.token_store.load("u1"), new_token)
        self.assertEqual(self.session.post.call_args.kwargs["data"]["grant_type"], "refresh_token")

    def test_refresh_without_refresh_token_requires_reconnect(self) -> None:
        with self.assertRaises(AuthError):
            self.oauth.refresh("u1", CalendarToken(access_token="a"))
        self.session.post.assert_not_called()

    def test_refresh_network_failure_is_auth_error(self) -> None:
        self.session.post.side_effect = requests.ConnectionError("offline")
        with self.assertRaises(AuthError):
            self.oauth.refresh("u1", CalendarToken(access_token="a", refresh_token="rt"))

    def test_get_valid_access_token_refreshes_inside_buffer(self) -> None:
        self.session.post.return_value = _response(payload={"access_token": "new", "expires_in": 3600})
        callback = mock.Mock()
        stale = CalendarToken(access_token="old", refresh_token="rt", expiry=NOW_MS + 1000)

        access_token, token = self.oauth.get_valid_access_token("u1", stale, callback)

        self.assertEqual(access_token, "new")
        callback.assert_called_once_with(token)

    def test_get_valid_access_token_keeps_fresh_token(self) -> None:
        fresh = CalendarToken(access_token="ok", refresh_token="rt", expiry=NOW_MS + 3_600_000)
        self.assertEqual(self.oauth.get_valid_access_token("u1", fresh), ("ok", fresh))
        self.session.post.assert_not_called()

    def test_disconnect_tolerates_revoke_failure(self) -> None:
        token = CalendarToken(access_token="at", refresh_token="rt", expiry=NOW_MS)
        self.token_store.save("u1", token)
        self.session.post.side_effect = requests.ConnectionError("offline")

        self.oauth.disconnect("u1", token)

        self.assertIsNone(self.token_store.load("u1"))
        self.assertEqual(self.session.post.call_args.args[0], GOOGLE_REVOKE_URL)
        self.assertEqual(self.session.post.call_args.kwargs["params"], {"token": "at"})


class ParseStateTests(unittest.TestCase):
    def test_legacy_nonce_is_treated_as_web_flow(self) -> None:
        self.assertEqual(parse_state("plain-nonce"), {"nonce": "plain-nonce", "mobile": False, "uid": None})


if __name__ == "__main__":
    unittest.main()
