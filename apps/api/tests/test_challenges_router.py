"""Joining a challenge through the API."""
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from core.database import get_db
from main import app
from models import Challenge
from services.activity_ingest import ActivityIngestor

ADMIN = {"X-Admin-Token": "test-admin-token"}


@pytest.fixture
def client(db_session):
    app.dependency_overrides[get_db] = lambda: db_session
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def october_challenge(db_session):
    challenge = Challenge(
        challenge_id="oct-5k",
        title="October 5k",
        challenge_type="INDIVIDUAL",
        status="Active",
        start_date=datetime(2026, 10, 1, tzinfo=timezone.utc),
        end_date=datetime(2026, 10, 31, 23, 59, tzinfo=timezone.utc),
        target_value=5000.0,
    )
    db_session.add(challenge)
    db_session.commit()
    return challenge


class TestJoinChallenge:
    def test_join_counts_swims_already_stored(self, client, db_session, october_challenge, activity_payload):
        ActivityIngestor(db_session).ingest_one(activity_payload(1, distance=1500.0))

        response = client.post("/v1/challenges/oct-5k/join", json={"user_id": "1001"}, headers=ADMIN)

        assert response.status_code == 201
        assert response.json() == {"challenge_id": "oct-5k", "user_id": "1001", "progress": 1500.0}

    def test_second_join_conflicts(self, client, october_challenge):
        client.post("/v1/challenges/oct-5k/join", json={"user_id": "1001"}, headers=ADMIN)

        response = client.post("/v1/challenges/oct-5k/join", json={"user_id": "1001"}, headers=ADMIN)

        assert response.status_code == 409

    def test_unknown_challenge(self, client):
        response = client.post("/v1/challenges/nope/join", json={"user_id": "1001"}, headers=ADMIN)

        assert response.status_code == 404

    def test_requires_admin_token(self, client, october_challenge):
        response = client.post("/v1/challenges/oct-5k/join", json={"user_id": "1001"})

        assert response.status_code == 401
