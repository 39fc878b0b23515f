"""
Wiring for the sync pipeline.

Each entry point (API request, Celery task) builds one pipeline around its
own DB session and the shared state store, so no component holds a global
client or session.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from services.activity_filter import ActivityFilter
from services.activity_ingest import ActivityIngestor
from services.activity_sync import ActivitySyncService
from services.member_store import MemberStore
from services.strava_client import StravaActivityClient
from services.sync_queue import SyncQueue
from services.sync_state import STATE_ERRORS, SyncStateStore, get_state_store
from services.webhook_events import WebhookEventRouter

logger = logging.getLogger(__name__)


@dataclass
class SyncPipeline:
    db: Session
    members: MemberStore
    client: StravaActivityClient
    ingestor: ActivityIngestor
    sync: ActivitySyncService
    state: Optional[SyncStateStore]
    queue: Optional[SyncQueue]
    router: WebhookEventRouter


def build_pipeline(
    db: Session,
    state: Optional[SyncStateStore] = None,
    client: Optional[StravaActivityClient] = None,
    activity_filter: Optional[ActivityFilter] = None,
) -> SyncPipeline:
    state = state if state is not None else get_state_store()
    activity_filter = activity_filter or ActivityFilter.from_settings()

    members = MemberStore(db)
    client = client or StravaActivityClient(members, activity_filter=activity_filter)
    ingestor = ActivityIngestor(db, activity_filter=activity_filter)
    sync = ActivitySyncService(db, members, client, ingestor)

    def sync_member(athlete_id: str) -> bool:
        try:
            return sync.sync_member(athlete_id)
        except SQLAlchemyError:
            # Leave the session usable for the next member in the batch.
            db.rollback()
            raise

    queue = None
    if state is not None:
        queue = SyncQueue(state, sync_member=sync_member, member_ids=members.authorized_member_ids)
    else:
        logger.warning("State store unavailable; sync queue disabled for this pipeline")

    def disarm_polling() -> None:
        if queue is None:
            return
        try:
            queue.disarm_schedule()
        except STATE_ERRORS as e:
            logger.warning(f"Could not disarm polling: {e}")

    router = WebhookEventRouter(db, members, client, ingestor, disarm_polling=disarm_polling)

    return SyncPipeline(
        db=db,
        members=members,
        client=client,
        ingestor=ingestor,
        sync=sync,
        state=state,
        queue=queue,
        router=router,
    )
