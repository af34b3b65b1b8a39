import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock
from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient

from tethru.models import CalendarToken, now_millis
from tethru.web_admin import create_app

USER = {"X-User-Id": "u1"}


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = str(Path(self.temp_dir.name) / "config.yaml")
        self.state_path = str(Path(self.temp_dir.name) / "state.db")
        os.environ["TETHRU_CONFIG_PATH"] = self.config_path
        os.environ["TETHRU_STATE_PATH"] = self.state_path
        self.app = create_app()
        self.client = TestClient(self.app)

        seed_payload = {
            "google": {"client_id": "cid", "client_secret": "secret-value"},
            "sync": {"debounce_seconds": 60, "interval_seconds": 300, "timezone": "UTC"},
        }
        resp = self.client.put("/api/config", json={"payload": seed_payload})
        self.assertEqual(resp.status_code, 200)

    def tearDown(self) -> None:
        self.app.state.context.sync_engine.shutdown()
        self.temp_dir.cleanup()

    def _auth_state(self, mobile: bool) -> str:
        resp = self.client.post(f"/api/calendar/connect?mobile={str(mobile).lower()}", headers=USER)
        self.assertEqual(resp.status_code, 200)
        return parse_qs(urlparse(resp.json()["auth_url"]).query)["state"][0]

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_config_raw_has_masked_meta(self) -> None:
        data = self.client.get("/api/config/raw").json()
        self.assertEqual(data["config"]["google"]["client_secret"], "***")
        self.assertEqual(data["config"]["security"]["token_secret"], "***")
        self.assertTrue(data["meta"]["google"]["client_secret"]["is_masked"])

    def test_put_config_masked_secret_does_not_override(self) -> None:
        update = {"google": {"client_secret": "***", "calendar_id": "work"}, "security": {"token_secret": ""}}
        resp = self.client.put("/api/config", json={"payload": update})
        self.assertEqual(resp.status_code, 200)
        config = self.app.state.context.config_manager.load()
        self.assertEqual(config.google.client_secret, "secret-value")
        self.assertEqual(config.google.calendar_id, "work")
        self.assertTrue(config.security.token_secret)

    def test_user_header_is_required(self) -> None:
        resp = self.client.get("/api/calendar/settings")
        self.assertEqual(resp.status_code, 400)

    def test_settings_round_trip(self) -> None:
        data = self.client.get("/api/calendar/settings", headers=USER).json()
        self.assertFalse(data["connected"])
        self.assertTrue(data["sync_tasks"])

        resp = self.client.put("/api/calendar/settings", json={"sync_follow_ups": False}, headers=USER)

        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["sync_follow_ups"])
        self.assertTrue(resp.json()["sync_birthdays"])

    def test_connect_without_client_id_is_unauthorized(self) -> None:
        self.client.put("/api/config", json={"payload": {"google": {"client_id": ""}}})
        resp = self.client.post("/api/calendar/connect", headers=USER)
        self.assertEqual(resp.status_code, 401)
        self.assertTrue(resp.json()["reconnect"])

    def test_web_callback_with_forged_state_is_rejected(self) -> None:
        self._auth_state(mobile=False)
        resp = self.client.get("/auth/calendar/callback", params={"code": "c", "state": "forged"})
        self.assertEqual(resp.status_code, 400)

    def test_mobile_callback_redirects_to_app(self) -> None:
        state = self._auth_state(mobile=True)
        token_response = mock.Mock(ok=True, status_code=200)
        token_response.json.return_value = {"access_token": "at", "refresh_token": "rt", "expires_in": 3600}
        engine = self.app.state.context.sync_engine

        with mock.patch.object(engine.session, "post", return_value=token_response):
            resp = self.client.get(
                "/auth/calendar/callback",
                params={"code": "c", "state": state},
                follow_redirects=False,
            )

        self.assertEqual(resp.status_code, 307)
        self.assertEqual(resp.headers["location"], "com.tethru.app://calendar-connected")
        self.assertTrue(engine.is_connected("u1"))

    def test_mobile_callback_error_redirects_with_message(self) -> None:
        state = self._auth_state(mobile=True)
        resp = self.client.get(
            "/auth/calendar/callback",
            params={"state": state, "error": "access_denied"},
            follow_redirects=False,
        )
        self.assertEqual(resp.status_code, 307)
        self.assertTrue(resp.headers["location"].startswith("com.tethru.app://calendar-connected?error="))

    def test_sync_requires_connection(self) -> None:
        resp = self.client.post(
            "/api/calendar/sync",
            json={"tasks": [{"id": "t1", "title": "a", "dueDate": "2025-03-01"}], "contacts": []},
            headers=USER,
        )
        self.assertEqual(resp.status_code, 401)
        runs = self.client.get("/api/sync/status", headers=USER).json()["runs"]
        self.assertEqual(runs[0]["status"], "failed")

    def test_invalid_task_payload_is_bad_request(self) -> None:
        resp = self.client.post("/api/calendar/sync", json={"tasks": [{"title": "no id"}]}, headers=USER)
        self.assertEqual(resp.status_code, 400)

    def test_changes_are_queued_for_debounce(self) -> None:
        engine = self.app.state.context.sync_engine
        token = CalendarToken(access_token="at", refresh_token="rt", expiry=now_millis() + 3_600_000)
        engine.token_store.save("u1", token)
        engine.state_store.update_settings("u1", connected=True)

        resp = self.client.post(
            "/api/calendar/changes",
            json={"tasks": [{"id": "t1", "title": "a", "dueDate": "2025-03-01"}]},
            headers=USER,
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"queued": 1, "pending": 1})

    def test_changes_are_not_queued_while_disconnected(self) -> None:
        resp = self.client.post(
            "/api/calendar/changes",
            json={"tasks": [{"id": "t1", "title": "a", "dueDate": "2025-03-01"}]},
            headers=USER,
        )
        self.assertEqual(resp.json(), {"queued": 0, "pending": 0})

    def test_disconnect_and_mappings(self) -> None:
        resp = self.client.post("/api/calendar/disconnect", headers=USER)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["deleted"], 0)
        self.assertEqual(self.client.get("/api/calendar/mappings", headers=USER).json(), {"mappings": []})

    def test_manual_sync_trigger(self) -> None:
        resp = self.client.post("/api/sync/run")
        self.assertEqual(resp.json(), {"message": "sync triggered"})


if __name__ == "__main__":
    unittest.main()
