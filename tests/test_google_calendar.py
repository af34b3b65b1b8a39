import unittest
from unittest import mock

import requests

from tethru.google_calendar import CalendarApiError, GoogleCalendarClient
from tethru.models import CalendarToken

BASE = "https://www.googleapis.com/calendar/v3"


def _response(status_code: int = 200, payload: object = None, text: str = "") -> mock.Mock:
    response = mock.Mock()
    response.status_code = status_code
    response.content = b"" if payload is None else b"{...}"
    response.text = text
    if payload is None:
        response.json.side_effect = ValueError("no body")
    else:
        response.json.return_value = payload
    return response


class GoogleCalendarClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = mock.Mock()
        self.oauth = mock.Mock()
        self.oauth.session = self.session
        self.oauth.get_valid_access_token.side_effect = lambda user_id, token, callback=None: (
            token.access_token,
            token,
        )
        self.on_refreshed = mock.Mock()
        self.client = GoogleCalendarClient(self.oauth, "u1", on_token_refreshed=self.on_refreshed)
        self.token = CalendarToken(access_token="at", refresh_token="rt", expiry=0)

    def test_create_event_posts_to_primary_calendar(self) -> None:
        self.session.request.return_value = _response(200, {"id": "evt-1"})

        event_id, token = self.client.create_event(self.token, {"summary": "[Tethru] x"})

        self.assertEqual(event_id, "evt-1")
        self.assertIs(token, self.token)
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("POST", f"{BASE}/calendars/primary/events"))
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer at")
        self.assertEqual(kwargs["json"], {"summary": "[Tethru] x"})

    def test_unauthorized_forces_single_refresh_and_retry(self) -> None:
        refreshed = CalendarToken(access_token="at2", refresh_token="rt", expiry=1)
        self.oauth.refresh.return_value = refreshed
        self.session.request.side_effect = [_response(401, {"error": {"message": "expired"}}), _response(200, {})]

        _, token = self.client.update_event(self.token, "evt-1", {"summary": "s"})

        self.assertEqual(token, refreshed)
        self.oauth.refresh.assert_called_once_with("u1", self.token)
        self.on_refreshed.assert_called_once_with(refreshed)
        self.assertEqual(self.session.request.call_count, 2)
        self.assertEqual(self.session.request.call_args.kwargs["headers"]["Authorization"], "Bearer at2")
        self.assertEqual(self.session.request.call_args.args[0], "PUT")

    def test_second_unauthorized_is_not_retried_again(self) -> None:
        self.oauth.refresh.return_value = CalendarToken(access_token="at2", refresh_token="rt")
        self.session.request.side_effect = [_response(401, {}), _response(401, {"error": "denied"})]

        with self.assertRaises(CalendarApiError) as ctx:
            self.client.create_event(self.token, {})

        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(self.oauth.refresh.call_count, 1)
        self.assertEqual(ctx.exception.token.access_token, "at2")

    def test_delete_missing_event_counts_as_success(self) -> None:
        self.session.request.return_value = _response(404, {"error": {"message": "Not Found"}})
        deleted, token = self.client.delete_event(self.token, "gone")
        self.assertFalse(deleted)
        self.assertIs(token, self.token)

    def test_delete_returns_true_on_no_content(self) -> None:
        self.session.request.return_value = _response(204)
        deleted, _ = self.client.delete_event(self.token, "evt/1")
        self.assertTrue(deleted)
        self.assertTrue(self.session.request.call_args.args[1].endswith("/events/evt%2F1"))

    def test_server_error_carries_provider_message(self) -> None:
        self.session.request.return_value = _response(500, {"error": {"message": "Backend   Error"}})
        with self.assertRaises(CalendarApiError) as ctx:
            self.client.update_event(self.token, "evt-1", {})
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(ctx.exception.message, "Backend Error")
        self.assertFalse(ctx.exception.is_not_found)

    def test_network_failure_is_calendar_error(self) -> None:
        self.session.request.side_effect = requests.ConnectionError("offline")
        with self.assertRaises(CalendarApiError) as ctx:
            self.client.create_event(self.token, {})
        self.assertEqual(ctx.exception.status_code, 0)

    def test_get_event_hides_cancelled_events(self) -> None:
        self.session.request.return_value = _response(200, {"id": "evt-1", "status": "cancelled"})
        event, _ = self.client.get_event(self.token, "evt-1")
        self.assertIsNone(event)

    def test_find_tagged_event_filters_on_private_properties(self) -> None:
        self.session.request.return_value = _response(
            200,
            {"items": [{"id": "old", "status": "cancelled"}, {"id": "live", "status": "confirmed"}]},
        )

        found, _ = self.client.find_tagged_event(
            self.token, {"tethruSourceType": "task", "tethruSourceId": "t1"}, calendar_id="work"
        )

        self.assertEqual(found["id"], "live")
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("GET", f"{BASE}/calendars/work/events"))
        self.assertEqual(
            kwargs["params"],
            [
                ("privateExtendedProperty", "tethruSourceId=t1"),
                ("privateExtendedProperty", "tethruSourceType=task"),
                ("maxResults", "5"),
            ],
        )

    def test_list_calendars_returns_items(self) -> None:
        self.session.request.return_value = _response(200, {"items": [{"id": "primary"}]})
        calendars, _ = self.client.list_calendars(self.token)
        self.assertEqual(calendars, [{"id": "primary"}])


if __name__ == "__main__":
    unittest.main()
