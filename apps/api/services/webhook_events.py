"""
Strava push events relayed by the webhook proxy.

The proxy answers Strava immediately and forwards {secret, strava_payload}
here. Handling is split in two:

- accept_inbound_event(): fast. Checks the shared secret and the payload
  shape, stamps the last-webhook time for the health monitor. This is all
  the HTTP request waits for.
- WebhookEventRouter.process(): slow. Runs in the Celery worker (or inline
  when WEBHOOK_PROCESS_INLINE is set) and talks to Strava.

Replies are plain text and always HTTP 200; the proxy only needs to tell
"Authentication Failed" from "Success" from "Error processing request: ...".
"""

import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from core.cache import invalidate_activity_caches
from core.config import settings
from services.activity_ingest import ActivityIngestor
from services.challenge_progress import recompute_member_progress
from services.member_store import MemberStore, normalize_athlete_id
from services.strava_client import StravaActivityClient, StravaAPIError, StravaAuthError
from services.sync_state import LAST_WEBHOOK_KEY, STATE_ERRORS, SyncStateStore

logger = logging.getLogger(__name__)

AUTH_FAILED = "Authentication Failed"
SUCCESS = "Success"
ERROR_PREFIX = "Error processing request: "


class WebhookConfigError(RuntimeError):
    """WORKER_SHARED_SECRET is not configured; no event can be authenticated."""


class WebhookPayloadError(ValueError):
    """The relayed body is missing strava_payload or required fields."""


@dataclass(frozen=True)
class WebhookEvent:
    object_type: str
    aspect_type: str
    object_id: int
    owner_id: str
    updates: Dict[str, Any]
    subscription_id: Optional[int] = None
    event_time: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "WebhookEvent":
        try:
            return cls(
                object_type=str(payload["object_type"]),
                aspect_type=str(payload["aspect_type"]),
                object_id=int(payload["object_id"]),
                owner_id=normalize_athlete_id(payload["owner_id"]),
                updates=dict(payload.get("updates") or {}),
                subscription_id=payload.get("subscription_id"),
                event_time=payload.get("event_time"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise WebhookPayloadError(f"malformed strava_payload: {e}") from e

    def to_payload(self) -> Dict[str, Any]:
        return {
            "object_type": self.object_type,
            "aspect_type": self.aspect_type,
            "object_id": self.object_id,
            "owner_id": self.owner_id,
            "updates": dict(self.updates),
            "subscription_id": self.subscription_id,
            "event_time": self.event_time,
        }


@dataclass
class WebhookAck:
    text: str
    event: Optional[WebhookEvent] = None

    @property
    def accepted(self) -> bool:
        return self.event is not None


def secret_matches(provided: Optional[str], expected: str) -> bool:
    if not isinstance(provided, str):
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def record_webhook_received(state: Optional[SyncStateStore], at: Optional[datetime] = None) -> None:
    if state is None:
        logger.warning("State store unavailable; last webhook time not recorded")
        return
    at = at or datetime.now(timezone.utc)
    try:
        state.set(LAST_WEBHOOK_KEY, at.isoformat())
    except STATE_ERRORS as e:
        logger.warning(f"Could not record last webhook time: {e}")


def accept_inbound_event(
    body: Mapping[str, Any],
    state: Optional[SyncStateStore],
    expected_secret: Optional[str] = None,
) -> WebhookAck:
    """
    Fast phase. Never calls Strava or touches the activity table.

    Raises WebhookConfigError when no shared secret is configured.
    """
    expected_secret = expected_secret if expected_secret is not None else settings.WORKER_SHARED_SECRET
    if not expected_secret:
        logger.error("WORKER_SHARED_SECRET is not set; refusing webhook")
        raise WebhookConfigError("WORKER_SHARED_SECRET is not configured")

    if not secret_matches(body.get("secret"), expected_secret):
        logger.warning("Webhook authentication failed: shared secret mismatch")
        return WebhookAck(text=AUTH_FAILED)

    payload = body.get("strava_payload")
    if not payload:
        raise WebhookPayloadError("authenticated, but strava_payload was missing")
    event = WebhookEvent.from_payload(payload)

    record_webhook_received(state)
    logger.info(
        f"Webhook accepted: {event.object_type}/{event.aspect_type} object={event.object_id} owner={event.owner_id}",
        extra={"extra_fields": event.to_payload()},
    )
    return WebhookAck(text=SUCCESS, event=event)


class WebhookEventRouter:
    """Deferred phase: apply one authenticated event to local state."""

    def __init__(
        self,
        db: Session,
        members: MemberStore,
        client: StravaActivityClient,
        ingestor: ActivityIngestor,
        disarm_polling: Callable[[], Any],
        invalidate_caches: Callable[[], Any] = invalidate_activity_caches,
        recompute_progress: Callable[[Session, str], Any] = recompute_member_progress,
    ):
        self.db = db
        self.members = members
        self.client = client
        self.ingestor = ingestor
        self.disarm_polling = disarm_polling
        self.invalidate_caches = invalidate_caches
        self.recompute_progress = recompute_progress

    def process(self, event: WebhookEvent) -> str:
        """Dispatch on object/aspect type. Returns a short outcome label."""
        if event.object_type == "activity":
            if event.aspect_type == "create":
                return "created" if self.handle_create(event) else "not_added"
            if event.aspect_type == "update":
                return self.handle_update(event)
            if event.aspect_type == "delete":
                self.handle_delete(event)
                return "deleted"
            logger.info(f"Unhandled activity aspect {event.aspect_type!r}; ignoring")
            return "ignored"

        if event.object_type == "athlete":
            return self.handle_athlete(event)

        logger.info(f"Unhandled webhook object type {event.object_type!r}; ignoring")
        return "ignored"

    def delete_if_present(self, activity_id: int) -> bool:
        return self.ingestor.delete_by_remote_id(activity_id)

    def handle_create(self, event: WebhookEvent) -> bool:
        if not self.members.has_token(event.owner_id):
            logger.warning(f"No Strava token for owner {event.owner_id}; dropping activity {event.object_id}")
            return False

        try:
            activity = self.client.fetch_activity_by_id(event.object_id, event.owner_id)
        except (StravaAuthError, StravaAPIError) as e:
            logger.error(
                f"Could not fetch activity {event.object_id} for owner {event.owner_id}: {e}",
                extra={"extra_fields": {"athlete_id": event.owner_id, "activity_id": event.object_id}},
            )
            return False

        if not self.ingestor.ingest_one(activity):
            logger.info(f"Activity {event.object_id} not added (filtered or already stored)")
            return False

        self.members.touch_last_synced(event.owner_id, datetime.now(timezone.utc))
        self.recompute_progress(self.db, event.owner_id)
        self.invalidate_caches()
        # Push channel is demonstrably alive; polling can stand down.
        self.disarm_polling()
        logger.info(f"Webhook stored activity {event.object_id} for owner {event.owner_id}")
        return True

    def handle_update(self, event: WebhookEvent) -> str:
        """Replace the stored record with Strava's current version."""
        deleted = self.delete_if_present(event.object_id)
        added = self.handle_create(event)
        if deleted and not added:
            # The old row is gone and nothing replaced it (fetch failed, or the
            # activity no longer passes the filter). Caches still show it.
            self.recompute_progress(self.db, event.owner_id)
            self.invalidate_caches()
            logger.warning(
                f"Activity {event.object_id} removed on update but not re-added",
                extra={"extra_fields": {"athlete_id": event.owner_id, "activity_id": event.object_id}},
            )
            return "removed"
        return "replaced" if added else "not_added"

    def handle_delete(self, event: WebhookEvent) -> None:
        if self.delete_if_present(event.object_id):
            self.recompute_progress(self.db, event.owner_id)
        self.invalidate_caches()

    def handle_athlete(self, event: WebhookEvent) -> str:
        if event.aspect_type == "update" and str(event.updates.get("authorized", "")).lower() == "false":
            self.members.mark_deauthorized(event.owner_id)
            return "deauthorized"
        logger.info(f"Athlete event {event.aspect_type!r} for {event.owner_id} needs no action")
        return "ignored"


def handle_inbound_event(
    body: Mapping[str, Any],
    router: WebhookEventRouter,
    state: Optional[SyncStateStore],
    expected_secret: Optional[str] = None,
) -> str:
    """Authenticate and process in one go. Returns the reply text for the proxy."""
    try:
        ack = accept_inbound_event(body, state, expected_secret=expected_secret)
        if not ack.accepted:
            return ack.text
        router.process(ack.event)
        return SUCCESS
    except Exception as e:
        logger.exception(f"Webhook processing failed: {e}")
        return f"{ERROR_PREFIX}{e}"
