"""
Per-member activity sync.

sync_member() is the single place both the batch queue and manual syncs go
through:
  1. load the member (unknown member: nothing to do)
  2. throttle: skip if synced within SYNC_UPDATE_INTERVAL_HOURS unless forced
  3. look back SYNC_FIRST_LOOKBACK_DAYS if never synced, else lookback_days
  4. fetch the window from Strava (already filtered)
  5. ingest; if anything was added, stamp last_synced_at, recompute the
     member's challenge progress and tell the caller caches are stale

A Strava failure is logged and reported as "nothing added" so one member
cannot break a batch.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from core.config import settings
from services.activity_ingest import ActivityIngestor
from services.challenge_progress import recompute_member_progress
from services.member_store import MemberStore, normalize_athlete_id
from services.strava_client import StravaActivityClient, StravaAPIError, StravaAuthError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActivitySyncService:
    def __init__(
        self,
        db: Session,
        members: MemberStore,
        client: StravaActivityClient,
        ingestor: ActivityIngestor,
        recompute_progress: Optional[Callable[[Session, str], Any]] = None,
        update_interval: Optional[timedelta] = None,
        first_lookback_days: Optional[int] = None,
    ):
        self.db = db
        self.members = members
        self.client = client
        self.ingestor = ingestor
        self.recompute_progress = recompute_progress or recompute_member_progress
        self.update_interval = update_interval or timedelta(hours=settings.SYNC_UPDATE_INTERVAL_HOURS)
        self.first_lookback_days = first_lookback_days or settings.SYNC_FIRST_LOOKBACK_DAYS

    def is_due(self, last_synced: Optional[datetime], now: datetime) -> bool:
        return last_synced is None or now - last_synced >= self.update_interval

    def sync_member(
        self,
        athlete_id: Any,
        force_sync: bool = False,
        lookback_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Sync one member. Returns True iff at least one activity was added;
        the caller then invalidates the activity-derived caches.
        """
        athlete_id = normalize_athlete_id(athlete_id)
        now = now or _utcnow()
        if lookback_days is None:
            lookback_days = settings.SYNC_DEFAULT_LOOKBACK_DAYS

        member = self.members.get(athlete_id)
        if member is None:
            logger.warning(f"Sync requested for unknown member {athlete_id}")
            return False

        last_synced = self.members.last_synced(member)
        if not force_sync and not self.is_due(last_synced, now):
            logger.debug(f"Member {athlete_id} synced at {last_synced.isoformat()}; throttled")
            return False

        days = self.first_lookback_days if last_synced is None else lookback_days
        after = now - timedelta(days=days)

        try:
            activities = self.client.fetch_athlete_activities(
                athlete_id, int(after.timestamp()), int(now.timestamp())
            )
        except (StravaAuthError, StravaAPIError) as e:
            logger.error(
                f"Activity fetch failed for member {athlete_id}: {e}",
                extra={"extra_fields": {"athlete_id": athlete_id, "error": e.__class__.__name__}},
            )
            return False

        result = self.ingestor.ingest_many(activities)
        logger.info(
            f"Synced member {athlete_id}: {len(activities)} fetched, {len(result.added)} added",
            extra={"extra_fields": {"athlete_id": athlete_id, "lookback_days": days, **result.to_dict()}},
        )

        if not result.any_added:
            return False

        self.members.touch_last_synced(athlete_id, now)
        self.recompute_progress(self.db, athlete_id)
        return True
