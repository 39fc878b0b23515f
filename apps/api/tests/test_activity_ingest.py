"""
Deduplicating ingest and bulk cleanup.
"""
from datetime import datetime, timezone
from unittest.mock import patch

from models import Activity
from services.activity_filter import ActivityFilter
from services.activity_ingest import ActivityIngestor, activity_row


def _stored(db_session, strava_id):
    return db_session.query(Activity).filter(Activity.strava_activity_id == strava_id).all()


class TestIngestOne:
    def test_new_allowed_activity_is_added(self, db_session, activity_payload):
        ingestor = ActivityIngestor(db_session)

        assert ingestor.ingest_one(activity_payload(1)) is True

        rows = _stored(db_session, 1)
        assert len(rows) == 1
        assert rows[0].athlete_id == "1001"
        assert rows[0].activity_type == "Swim"
        assert rows[0].distance_m == 1500.0

    def test_second_ingest_of_same_id_is_rejected(self, db_session, activity_payload):
        ingestor = ActivityIngestor(db_session)

        assert ingestor.ingest_one(activity_payload(7)) is True
        assert ingestor.ingest_one(activity_payload(7, distance=9999)) is False

        rows = _stored(db_session, 7)
        assert len(rows) == 1
        assert rows[0].distance_m == 1500.0

    def test_filtered_activity_is_never_stored(self, db_session, activity_payload):
        ingestor = ActivityIngestor(db_session)

        assert ingestor.ingest_one(activity_payload(2, type="Run")) is False
        assert ingestor.ingest_one(activity_payload(3, visibility="only_me")) is False
        assert db_session.query(Activity).count() == 0

    def test_missing_id_is_rejected(self, db_session, activity_payload):
        payload = activity_payload(4)
        payload.pop("id")

        assert ActivityIngestor(db_session).ingest_one(payload) is False
        assert db_session.query(Activity).count() == 0

    def test_non_numeric_id_is_rejected(self, db_session, activity_payload):
        assert ActivityIngestor(db_session).ingest_one(activity_payload("abc")) is False
        assert db_session.query(Activity).count() == 0

    def test_unparsable_start_date_is_rejected(self, db_session, activity_payload):
        ingestor = ActivityIngestor(db_session)

        assert ingestor.ingest_one(activity_payload(12, start_date="not-a-date")) is False
        assert ingestor.ingest_one(activity_payload(13)) is True
        assert db_session.query(Activity).count() == 1

    def test_unique_constraint_catches_race(self, db_session, activity_payload):
        """Two triggers that both passed the existence check still store one row."""
        ingestor = ActivityIngestor(db_session)
        with patch.object(ActivityIngestor, "exists", return_value=False):
            assert ingestor.ingest_one(activity_payload(11)) is True
            assert ingestor.ingest_one(activity_payload(11)) is False

        assert len(_stored(db_session, 11)) == 1


class TestActivityRow:
    def test_flattens_nested_athlete_and_normalizes_id(self, activity_payload):
        payload = activity_payload(5)
        payload["athlete"] = {"id": "2002.0"}

        row = activity_row(payload)

        assert row.athlete_id == "2002"
        assert row.start_date == datetime(2026, 10, 15, 6, 30, tzinfo=timezone.utc)

    def test_negative_metrics_clamped_to_zero(self, activity_payload):
        row = activity_row(activity_payload(6, distance=-10, moving_time=-5))
        assert row.distance_m == 0.0
        assert row.moving_time_s == 0


class TestIngestMany:
    def test_batch_skips_existing_and_filtered(self, db_session, activity_payload):
        ingestor = ActivityIngestor(db_session)
        ingestor.ingest_one(activity_payload(1))

        result = ingestor.ingest_many([
            activity_payload(1),
            activity_payload(2),
            activity_payload(3, type="Run"),
            activity_payload(2),
        ])

        assert result.added == [2]
        assert result.skipped_existing == 2
        assert result.skipped_filtered == 1
        assert db_session.query(Activity).count() == 2

    def test_bad_payload_does_not_stop_batch(self, db_session, activity_payload):
        bad = activity_payload(8, start_date="not-a-date")

        result = ActivityIngestor(db_session).ingest_many([bad, activity_payload(9)])

        assert result.added == [9]
        assert result.errors == 1


class TestCleanup:
    def test_delete_by_remote_id(self, db_session, activity_payload):
        ingestor = ActivityIngestor(db_session)
        ingestor.ingest_one(activity_payload(42))

        assert ingestor.delete_by_remote_id(42) is True
        assert ingestor.delete_by_remote_id(42) is False
        assert _stored(db_session, 42) == []

    def test_purge_disallowed_after_rules_change(self, db_session, activity_payload, fake_redis):
        broad = ActivityIngestor(db_session, ActivityFilter.of(["Swim", "Run"], ["everyone", "only_me"]))
        broad.ingest_one(activity_payload(1))
        broad.ingest_one(activity_payload(2, type="Run"))
        broad.ingest_one(activity_payload(3, visibility="only_me"))

        removed = ActivityIngestor(db_session).purge_disallowed()

        assert removed == 2
        assert [a.strava_activity_id for a in db_session.query(Activity).all()] == [1]
        assert "leaderboard_this_month" in fake_redis.deleted

    def test_remove_duplicates_is_noop_when_ids_unique(self, db_session, activity_payload):
        ingestor = ActivityIngestor(db_session)
        ingestor.ingest_one(activity_payload(1))
        ingestor.ingest_one(activity_payload(2))

        assert ingestor.remove_duplicates() == 0
        assert db_session.query(Activity).count() == 2
