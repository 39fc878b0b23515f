"""
Strava webhook endpoints

The POST endpoint always answers 200 with plain text; the text is what the
webhook proxy reads.
"""
import json
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from core.config import settings
from core.database import get_db
from main import app
from models import Activity
from services.sync_state import LAST_WEBHOOK_KEY
from tests.strava_helpers import relayed_event, strava_response

ADMIN = {"X-Admin-Token": "test-admin-token"}


@pytest.fixture
def client(db_session):
    app.dependency_overrides[get_db] = lambda: db_session
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def deferred_task():
    task = MagicMock()
    with patch("tasks.sync_tasks.process_strava_webhook_event_task", task):
        yield task


class TestHandshake:
    def test_echoes_challenge(self, client):
        response = client.get("/v1/strava/webhook", params={
            "hub.mode": "subscribe",
            "hub.verify_token": "test-verify-token",
            "hub.challenge": "abc123",
        })

        assert response.status_code == 200
        assert response.json() == {"hub.challenge": "abc123"}

    def test_wrong_verify_token(self, client):
        response = client.get("/v1/strava/webhook", params={
            "hub.mode": "subscribe",
            "hub.verify_token": "guess",
            "hub.challenge": "abc123",
        })

        assert response.status_code == 403


class TestReceiveEvent:
    def test_success_defers_processing(self, client, deferred_task, state):
        response = client.post("/v1/strava/webhook", json=relayed_event(object_id=42))

        assert response.status_code == 200
        assert response.text == "Success"
        deferred_task.delay.assert_called_once()
        payload = deferred_task.delay.call_args.args[0]
        assert payload["object_id"] == 42
        assert payload["owner_id"] == "1001"
        assert state.get(LAST_WEBHOOK_KEY) is not None

    def test_redis_outage_still_defers(self, client, deferred_task, fake_redis):
        with patch.object(fake_redis, "set", side_effect=RedisConnectionError("redis gone")):
            response = client.post("/v1/strava/webhook", json=relayed_event(object_id=42))

        assert response.status_code == 200
        assert response.text == "Success"
        deferred_task.delay.assert_called_once()

    def test_bad_secret(self, client, deferred_task, state):
        response = client.post("/v1/strava/webhook", json=relayed_event(secret="wrong"))

        assert response.status_code == 200
        assert response.text == "Authentication Failed"
        deferred_task.delay.assert_not_called()
        assert state.get(LAST_WEBHOOK_KEY) is None

    def test_missing_payload(self, client, deferred_task):
        response = client.post("/v1/strava/webhook", json={"secret": "test-shared-secret"})

        assert response.status_code == 200
        assert response.text.startswith("Error processing request: ")
        deferred_task.delay.assert_not_called()

    def test_invalid_json(self, client, deferred_task):
        response = client.post(
            "/v1/strava/webhook",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.text.startswith("Error processing request: ")

    def test_unconfigured_secret(self, client, deferred_task):
        with patch.object(settings, "WORKER_SHARED_SECRET", None):
            response = client.post("/v1/strava/webhook", json=relayed_event())

        assert response.status_code == 200
        assert response.text.startswith("Error processing request: ")
        deferred_task.delay.assert_not_called()

    def test_inline_processing(self, client, db_session, make_member, deferred_task, activity_payload):
        make_member("1001")

        with patch.object(settings, "WEBHOOK_PROCESS_INLINE", True), \
                patch("services.strava_client.requests.get",
                      return_value=strava_response(200, activity_payload(42))):
            response = client.post("/v1/strava/webhook", json=relayed_event(object_id=42))

        assert response.text == "Success"
        deferred_task.delay.assert_not_called()
        assert db_session.query(Activity).filter(Activity.strava_activity_id == 42).count() == 1

    def test_broker_failure_is_reported(self, client, deferred_task):
        deferred_task.delay.side_effect = ConnectionError("broker down")

        response = client.post("/v1/strava/webhook", content=json.dumps(relayed_event()))

        assert response.status_code == 200
        assert response.text == "Error processing request: broker down"


class TestSubscriptionAdmin:
    def test_requires_admin_token(self, client):
        assert client.get("/v1/strava/webhook/subscriptions").status_code == 401
        assert client.get("/v1/strava/webhook/subscriptions", headers={"X-Admin-Token": "nope"}).status_code == 403

    def test_list(self, client):
        with patch("services.strava_webhook.requests.get", return_value=strava_response(200, [{"id": 7}])):
            response = client.get("/v1/strava/webhook/subscriptions", headers=ADMIN)

        assert response.status_code == 200
        assert response.json() == [{"id": 7}]

    def test_subscribe(self, client):
        with patch("services.strava_webhook.requests.post", return_value=strava_response(201, {"id": 8})) as mock_post:
            response = client.post(
                "/v1/strava/webhook/subscribe",
                params={"callback_url": "https://proxy.example.org/strava"},
                headers=ADMIN,
            )

        assert response.status_code == 200
        assert response.json() == {"id": 8}
        assert mock_post.call_args.kwargs["data"]["verify_token"] == "test-verify-token"

    def test_subscribe_rejected_by_strava(self, client):
        with patch("services.strava_webhook.requests.post", return_value=strava_response(400, {"errors": []})):
            response = client.post(
                "/v1/strava/webhook/subscribe",
                params={"callback_url": "https://proxy.example.org/strava"},
                headers=ADMIN,
            )

        assert response.status_code == 502

    def test_delete(self, client):
        with patch("services.strava_webhook.requests.delete", return_value=strava_response(204)):
            response = client.delete("/v1/strava/webhook/subscriptions/7", headers=ADMIN)

        assert response.status_code == 200
        assert response.json() == {"deleted": True, "subscription_id": 7}
