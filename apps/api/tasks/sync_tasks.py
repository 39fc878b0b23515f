"""
Sync pipeline Celery tasks.

- tasks.drain_sync_queue: beat, every 15 minutes. No-op unless armed.
- tasks.check_webhook_health: beat, daily 03:00 UTC.
- tasks.recompute_community_challenges: beat, hourly.
- tasks.process_strava_webhook_event: enqueued by the webhook endpoint
  after the fast acknowledgment.
- tasks.sync_member / tasks.enqueue_members: manual and OAuth follow-ups.

Every task opens its own session, builds a pipeline around it and closes the
session in finally. Tasks return a status dict, never raise for expected
conditions (Redis down, lock busy).
"""

import logging
from typing import Dict, List

from celery import Task

from tasks import celery_app
from core.cache import invalidate_activity_caches
from core.config import settings
from core.database import get_db_sync
from services.challenge_progress import recompute_community_progress
from services.pipeline import build_pipeline
from services.sync_queue import QueueLockTimeout
from services.sync_state import COMMUNITY_LOCK_KEY, STATE_ERRORS, LockNotAcquired, get_state_store
from services.webhook_events import WebhookEvent
from services.webhook_health import check_health

logger = logging.getLogger(__name__)


def _state_unavailable(action: str, error: Exception = None) -> Dict:
    if error is None:
        logger.warning(f"Redis unavailable; skipping {action}")
    else:
        logger.warning(f"Redis error during {action}: {error}")
    return {"status": "skipped", "reason": "state_store_unavailable"}


@celery_app.task(name="tasks.drain_sync_queue", bind=True)
def drain_sync_queue_task(self: Task) -> Dict:
    state = get_state_store()
    if state is None:
        return _state_unavailable("sync queue drain")

    db = get_db_sync()
    try:
        pipeline = build_pipeline(db, state=state)
        if not pipeline.queue.is_armed():
            return {"status": "not_armed"}
        return pipeline.queue.drain().to_dict()
    except STATE_ERRORS as e:
        return _state_unavailable("sync queue drain", e)
    finally:
        db.close()


@celery_app.task(name="tasks.check_webhook_health", bind=True)
def check_webhook_health_task(self: Task) -> Dict:
    state = get_state_store()
    if state is None:
        return _state_unavailable("webhook health check")

    db = get_db_sync()
    try:
        pipeline = build_pipeline(db, state=state)
        return check_health(state, pipeline.queue)
    except STATE_ERRORS as e:
        return _state_unavailable("webhook health check", e)
    finally:
        db.close()


@celery_app.task(name="tasks.recompute_community_challenges", bind=True)
def recompute_community_challenges_task(self: Task) -> Dict:
    state = get_state_store()
    if state is None:
        return _state_unavailable("community challenge recompute")

    db = get_db_sync()
    try:
        with state.lock(COMMUNITY_LOCK_KEY, wait_s=settings.SYNC_QUEUE_DRAIN_LOCK_TIMEOUT_S):
            totals = recompute_community_progress(db)
        return {"status": "success", "challenges": totals}
    except LockNotAcquired:
        logger.warning("Community recompute already running; skipping")
        return {"status": "skipped", "reason": "locked"}
    except STATE_ERRORS as e:
        return _state_unavailable("community challenge recompute", e)
    finally:
        db.close()


@celery_app.task(name="tasks.process_strava_webhook_event", bind=True)
def process_strava_webhook_event_task(self: Task, payload: Dict) -> Dict:
    """Deferred phase of a webhook the API already acknowledged."""
    event = WebhookEvent.from_payload(payload)
    db = get_db_sync()
    try:
        pipeline = build_pipeline(db)
        outcome = pipeline.router.process(event)
        return {"status": "success", "outcome": outcome, "object_id": event.object_id}
    except Exception as e:
        db.rollback()
        logger.error(
            f"Webhook event {event.object_type}/{event.aspect_type} {event.object_id} failed: {e}",
            exc_info=True,
            extra={"extra_fields": event.to_payload()},
        )
        return {"status": "error", "error": str(e), "object_id": event.object_id}
    finally:
        db.close()


@celery_app.task(name="tasks.sync_member", bind=True)
def sync_member_task(self: Task, athlete_id: str, force_sync: bool = False) -> Dict:
    db = get_db_sync()
    try:
        pipeline = build_pipeline(db)
        added = pipeline.sync.sync_member(athlete_id, force_sync=force_sync)
        if added:
            invalidate_activity_caches()
        return {"status": "success", "athlete_id": athlete_id, "added": added}
    finally:
        db.close()


@celery_app.task(name="tasks.enqueue_members", bind=True)
def enqueue_members_task(self: Task, athlete_ids: List[str]) -> Dict:
    state = get_state_store()
    if state is None:
        return _state_unavailable("member enqueue")

    db = get_db_sync()
    try:
        pipeline = build_pipeline(db, state=state)
        added = pipeline.queue.enqueue(athlete_ids)
        return {"status": "success", "enqueued": added}
    except QueueLockTimeout as e:
        # Transient: Celery retries with backoff.
        raise self.retry(exc=e, countdown=60, max_retries=3)
    except STATE_ERRORS as e:
        return _state_unavailable("member enqueue", e)
    finally:
        db.close()
