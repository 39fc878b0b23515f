"""
Manual sync operations (admin only).

Everything here also happens automatically; these endpoints exist for
maintenance and for backfilling a member right after support requests.
"""

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.auth import require_admin
from core.cache import invalidate_activity_caches
from core.database import get_db
from core.exceptions import NotFoundError, ServiceUnavailableError
from services.member_profiles import refresh_member_profiles
from services.pipeline import build_pipeline
from services.sync_queue import QueueLockTimeout
from services.webhook_health import last_webhook_at

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/sync", tags=["sync-admin"], dependencies=[Depends(require_admin)])


@router.get("/status")
def get_sync_status(db: Session = Depends(get_db)):
    pipeline = build_pipeline(db)
    if pipeline.queue is None:
        raise ServiceUnavailableError("State store unavailable")
    last = last_webhook_at(pipeline.state)
    return {
        "queue": pipeline.queue.pending(),
        "armed": pipeline.queue.is_armed(),
        "last_webhook_at": last.isoformat() if last else None,
    }


# Declared before /members/{athlete_id} so the path is not read as an id.
@router.post("/members/refresh-profiles")
def refresh_profiles(db: Session = Depends(get_db)):
    pipeline = build_pipeline(db)
    return refresh_member_profiles(pipeline.members, pipeline.client)


@router.post("/members/{athlete_id}")
def sync_member_now(
    athlete_id: str,
    force: bool = Query(True, description="Ignore the update interval"),
    lookback_days: int = Query(None, ge=1, le=365),
    db: Session = Depends(get_db),
):
    pipeline = build_pipeline(db)
    if pipeline.members.get(athlete_id) is None:
        raise NotFoundError("Member", athlete_id)
    added = pipeline.sync.sync_member(athlete_id, force_sync=force, lookback_days=lookback_days)
    if added:
        invalidate_activity_caches()
    return {"athlete_id": athlete_id, "added": added}


@router.post("/queue")
def enqueue_all_members(db: Session = Depends(get_db)):
    pipeline = build_pipeline(db)
    if pipeline.queue is None:
        raise ServiceUnavailableError("State store unavailable")
    try:
        added = pipeline.queue.enqueue(pipeline.members.authorized_member_ids())
    except QueueLockTimeout as e:
        raise ServiceUnavailableError(f"Sync queue busy: {e}")
    return {"enqueued": added, "queue_size": len(pipeline.queue.pending())}


@router.post("/activities/cleanup")
def cleanup_activities(db: Session = Depends(get_db)):
    pipeline = build_pipeline(db)
    purged = pipeline.ingestor.purge_disallowed()
    duplicates = pipeline.ingestor.remove_duplicates()
    logger.info(f"Activity cleanup: {purged} purged, {duplicates} duplicates removed")
    return {"purged": purged, "duplicates_removed": duplicates}
