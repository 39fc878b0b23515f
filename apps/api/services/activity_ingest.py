"""
Deduplicating activity ingest.

One stored row per Strava activity id. The existence check happens in the
application and again at the database (uq_activity_strava_activity_id), so
two overlapping triggers racing on the same activity end with one row: the
loser's insert hits the constraint and is reported as "not added".
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.cache import invalidate_activity_caches
from models import Activity
from services.activity_filter import ActivityFilter, activity_type_of
from services.member_store import normalize_athlete_id

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Outcome of a batch ingest."""
    added: List[int] = field(default_factory=list)
    skipped_existing: int = 0
    skipped_filtered: int = 0
    errors: int = 0

    @property
    def any_added(self) -> bool:
        return bool(self.added)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "added": len(self.added),
            "skipped_existing": self.skipped_existing,
            "skipped_filtered": self.skipped_filtered,
            "errors": self.errors,
        }


def _parse_start_date(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _remote_id(activity: Mapping[str, Any]) -> Optional[int]:
    value = activity.get("id")
    if value in (None, ""):
        return None
    return int(value)


def activity_row(activity: Mapping[str, Any]) -> Activity:
    """Build an Activity row from a Strava payload, flattening the nested athlete ref."""
    athlete = activity.get("athlete")
    owner = athlete.get("id") if isinstance(athlete, Mapping) else activity.get("athlete_id")

    return Activity(
        strava_activity_id=_remote_id(activity),
        athlete_id=normalize_athlete_id(owner),
        name=activity.get("name"),
        activity_type=activity_type_of(activity),
        distance_m=max(0.0, float(activity.get("distance") or 0)),
        moving_time_s=max(0, int(activity.get("moving_time") or 0)),
        start_date=_parse_start_date(activity.get("start_date")),
        visibility=activity.get("visibility"),
    )


class ActivityIngestor:
    def __init__(self, db: Session, activity_filter: Optional[ActivityFilter] = None):
        self.db = db
        self.activity_filter = activity_filter or ActivityFilter.from_settings()

    def exists(self, strava_activity_id: int) -> bool:
        return (
            self.db.query(Activity.id)
            .filter(Activity.strava_activity_id == int(strava_activity_id))
            .first()
            is not None
        )

    def get(self, strava_activity_id: Any) -> Optional[Activity]:
        return (
            self.db.query(Activity)
            .filter(Activity.strava_activity_id == int(strava_activity_id))
            .first()
        )

    def _insert(self, activity: Mapping[str, Any]) -> bool:
        row = activity_row(activity)
        if not row.athlete_id:
            logger.warning(f"Activity {row.strava_activity_id} has no owner; skipping")
            return False
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            # Another trigger stored it first.
            self.db.rollback()
            logger.info(f"Activity {row.strava_activity_id} already stored (constraint); skipping")
            return False
        return True

    def ingest_one(self, activity: Mapping[str, Any]) -> bool:
        """Store the activity if it is new and allowed. Returns whether it was added."""
        try:
            remote_id = _remote_id(activity)
        except (TypeError, ValueError) as e:
            logger.error(f"Unparsable activity id {activity.get('id')!r}: {e}")
            return False
        if remote_id is None:
            logger.warning("Activity payload without id; skipping")
            return False
        if not self.activity_filter.is_allowed(activity):
            return False
        if self.exists(remote_id):
            return False
        try:
            added = self._insert(activity)
        except (TypeError, ValueError) as e:
            self.db.rollback()
            logger.error(f"Could not store activity {remote_id}: {e}")
            return False
        if added:
            logger.info(f"Stored activity {remote_id}")
        return added

    def ingest_many(self, activities: Iterable[Mapping[str, Any]]) -> IngestResult:
        """
        Ingest a batch with one existence query for the whole pass.

        A payload that fails to parse is counted and skipped; the rest of the
        batch still goes in.
        """
        result = IngestResult()
        candidates = []
        for activity in activities:
            try:
                remote_id = _remote_id(activity)
            except (TypeError, ValueError) as e:
                logger.error(f"Unparsable activity id {activity.get('id')!r}: {e}")
                result.errors += 1
                continue
            if remote_id is None:
                result.errors += 1
                continue
            if not self.activity_filter.is_allowed(activity):
                result.skipped_filtered += 1
                continue
            candidates.append((remote_id, activity))

        if not candidates:
            return result

        ids = {remote_id for remote_id, _ in candidates}
        existing: Set[int] = {
            row[0]
            for row in self.db.query(Activity.strava_activity_id).filter(Activity.strava_activity_id.in_(sorted(ids))).all()
        }

        for remote_id, activity in candidates:
            if remote_id in existing:
                result.skipped_existing += 1
                continue
            try:
                added = self._insert(activity)
            except (TypeError, ValueError) as e:
                self.db.rollback()
                logger.error(f"Could not store activity {remote_id}: {e}")
                result.errors += 1
                continue
            if added:
                result.added.append(remote_id)
            else:
                result.skipped_existing += 1
            existing.add(remote_id)

        return result

    def delete_by_remote_id(self, strava_activity_id: Any) -> bool:
        rows = (
            self.db.query(Activity)
            .filter(Activity.strava_activity_id == int(strava_activity_id))
            .all()
        )
        for row in rows:
            self.db.delete(row)
        self.db.commit()
        deleted = len(rows)
        if not deleted:
            logger.info(f"Activity {strava_activity_id} not stored; nothing to delete")
        return bool(deleted)

    def purge_disallowed(self) -> int:
        """Delete stored activities that no longer pass the filter rules."""
        query = self.db.query(Activity).filter(
            ~Activity.activity_type.in_(sorted(self.activity_filter.allowed_types))
            | Activity.visibility.is_(None)
            | ~Activity.visibility.in_(sorted(self.activity_filter.allowed_visibility))
        )
        removed = query.delete(synchronize_session=False)
        self.db.commit()
        if removed:
            logger.info(f"Purged {removed} activities that fail the filter rules")
            invalidate_activity_caches()
        return removed

    def remove_duplicates(self) -> int:
        """Keep the first row per Strava id. Only relevant for pre-constraint data."""
        keepers = (
            self.db.query(func.min(Activity.id).label("keep_id"))
            .group_by(Activity.strava_activity_id)
            .subquery()
        )
        removed = (
            self.db.query(Activity)
            .filter(~Activity.id.in_(select(keepers.c.keep_id)))
            .delete(synchronize_session=False)
        )
        self.db.commit()
        if removed:
            logger.info(f"Removed {removed} duplicate activity rows")
            invalidate_activity_caches()
        return removed
