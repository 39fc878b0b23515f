"""
Strava client: token refresh and the 401 refresh-and-retry-once policy.

requests.get / requests.post are patched where services.strava_client uses them.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
import requests

from services.member_store import MemberStore
from services.strava_client import (
    StravaActivityClient,
    StravaAPIError,
    StravaAuthError,
    TokenRefreshError,
)
from tests.strava_helpers import strava_response


def _token_body(access="new-access", refresh="new-refresh", expires_in=21600):
    return {"access_token": access, "refresh_token": refresh, "expires_in": expires_in}


@pytest.fixture
def client(db_session):
    return StravaActivityClient(MemberStore(db_session))


class TestRefreshAccessToken:
    def test_refresh_persists_new_tokens(self, db_session, make_member, client):
        make_member("1001", refresh_token="old-refresh")

        with patch("services.strava_client.requests.post", return_value=strava_response(200, _token_body())) as mock_post:
            result = client.refresh_access_token("1001")

        assert result["access_token"] == "new-access"
        sent = mock_post.call_args.kwargs["data"]
        assert sent["grant_type"] == "refresh_token"
        assert sent["refresh_token"] == "old-refresh"
        assert mock_post.call_args.kwargs["timeout"] == client.timeout

        members = MemberStore(db_session)
        assert members.get_access_token("1001") == "new-access"
        assert members.get_refresh_token("1001") == "new-refresh"
        expires_at = result["expires_at"]
        assert timedelta(hours=5, minutes=59) < expires_at - datetime.now(timezone.utc) <= timedelta(hours=6)

    def test_no_refresh_token_fails_without_calling_strava(self, make_member, client):
        make_member("1001", refresh_token=None)

        with patch("services.strava_client.requests.post") as mock_post:
            with pytest.raises(TokenRefreshError):
                client.refresh_access_token("1001")

        mock_post.assert_not_called()

    def test_rejected_refresh_raises(self, make_member, client):
        make_member("1001")

        with patch("services.strava_client.requests.post", return_value=strava_response(400, {"message": "Bad Request"})):
            with pytest.raises(TokenRefreshError):
                client.refresh_access_token("1001")


class TestFetchAthleteActivities:
    def test_returns_only_allowed_activities(self, make_member, client, activity_payload):
        make_member("1001")
        body = [activity_payload(1), activity_payload(2, type="Run"), activity_payload(3, visibility="only_me")]

        with patch("services.strava_client.requests.get", return_value=strava_response(200, body)) as mock_get:
            activities = client.fetch_athlete_activities("1001", 1000, 2000)

        assert [a["id"] for a in activities] == [1]
        params = mock_get.call_args.kwargs["params"]
        assert params["after"] == 1000
        assert params["before"] == 2000
        assert params["per_page"] == 100
        assert mock_get.call_args.kwargs["headers"]["Authorization"] == "Bearer access-token"

    def test_full_page_fetches_next_page(self, make_member, db_session, activity_payload):
        make_member("1001")
        client = StravaActivityClient(MemberStore(db_session), per_page=2)
        pages = [
            strava_response(200, [activity_payload(1), activity_payload(2)]),
            strava_response(200, [activity_payload(3)]),
        ]

        with patch("services.strava_client.requests.get", side_effect=pages) as mock_get:
            activities = client.fetch_athlete_activities("1001", 0, 10)

        assert [a["id"] for a in activities] == [1, 2, 3]
        assert [c.kwargs["params"]["page"] for c in mock_get.call_args_list] == [1, 2]

    def test_401_refreshes_once_and_retries(self, make_member, client, activity_payload):
        make_member("1001")
        responses = [strava_response(401, {"message": "Authorization Error"}), strava_response(200, [activity_payload(1)])]

        with patch("services.strava_client.requests.get", side_effect=responses) as mock_get, \
                patch("services.strava_client.requests.post", return_value=strava_response(200, _token_body())) as mock_post:
            activities = client.fetch_athlete_activities("1001", 0, 10)

        assert [a["id"] for a in activities] == [1]
        assert mock_post.call_count == 1
        assert mock_get.call_count == 2
        assert mock_get.call_args_list[1].kwargs["headers"]["Authorization"] == "Bearer new-access"

    def test_second_401_is_terminal(self, make_member, client):
        make_member("1001")
        responses = [strava_response(401), strava_response(401)]

        with patch("services.strava_client.requests.get", side_effect=responses) as mock_get, \
                patch("services.strava_client.requests.post", return_value=strava_response(200, _token_body())) as mock_post:
            with pytest.raises(StravaAuthError):
                client.fetch_athlete_activities("1001", 0, 10)

        assert mock_post.call_count == 1
        assert mock_get.call_count == 2

    @pytest.mark.parametrize("status_code", [403, 429, 500, 503])
    def test_other_errors_are_terminal_without_refresh(self, make_member, client, status_code):
        make_member("1001")

        with patch("services.strava_client.requests.get", return_value=strava_response(status_code)) as mock_get, \
                patch("services.strava_client.requests.post") as mock_post:
            with pytest.raises(StravaAPIError) as exc_info:
                client.fetch_athlete_activities("1001", 0, 10)

        assert exc_info.value.status_code == status_code
        assert mock_get.call_count == 1
        mock_post.assert_not_called()

    def test_network_error_is_transient_failure(self, make_member, client):
        make_member("1001")

        with patch("services.strava_client.requests.get", side_effect=requests.ConnectionError("boom")):
            with pytest.raises(StravaAPIError):
                client.fetch_athlete_activities("1001", 0, 10)

    def test_missing_access_token_triggers_refresh_first(self, make_member, client):
        make_member("1001", access_token=None)

        with patch("services.strava_client.requests.get", return_value=strava_response(200, [])) as mock_get, \
                patch("services.strava_client.requests.post", return_value=strava_response(200, _token_body())) as mock_post:
            client.fetch_athlete_activities("1001", 0, 10)

        assert mock_post.call_count == 1
        assert mock_get.call_args.kwargs["headers"]["Authorization"] == "Bearer new-access"

    def test_expired_token_is_refreshed_before_request(self, make_member, client):
        make_member("1001", expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))

        with patch("services.strava_client.requests.get", return_value=strava_response(200, [])), \
                patch("services.strava_client.requests.post", return_value=strava_response(200, _token_body())) as mock_post:
            client.fetch_athlete_activities("1001", 0, 10)

        assert mock_post.call_count == 1

    def test_unknown_member_is_auth_failure(self, db_session, client):
        with patch("services.strava_client.requests.get") as mock_get:
            with pytest.raises(StravaAuthError):
                client.fetch_athlete_activities("9999", 0, 10)
        mock_get.assert_not_called()


class TestFetchActivityById:
    def test_fetches_single_activity(self, make_member, client, activity_payload):
        make_member("1001")

        with patch("services.strava_client.requests.get", return_value=strava_response(200, activity_payload(42))) as mock_get:
            activity = client.fetch_activity_by_id(42, "1001")

        assert activity["id"] == 42
        assert mock_get.call_args.args[0].endswith("/activities/42")

    def test_401_retry_once_applies(self, make_member, client, activity_payload):
        make_member("1001")
        responses = [strava_response(401), strava_response(200, activity_payload(42))]

        with patch("services.strava_client.requests.get", side_effect=responses), \
                patch("services.strava_client.requests.post", return_value=strava_response(200, _token_body())) as mock_post:
            activity = client.fetch_activity_by_id(42, "1001")

        assert activity["id"] == 42
        assert mock_post.call_count == 1
