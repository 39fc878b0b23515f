"""
Webhook health monitor.

If no webhook has been accepted for WEBHOOK_HEALTH_THRESHOLD_HOURS (or ever),
the push channel is presumed dead and the polling queue is armed. This never
disarms; only a webhook that actually stores an activity does that.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from core.config import settings
from services.sync_queue import SyncQueue
from services.sync_state import LAST_WEBHOOK_KEY, SyncStateStore

logger = logging.getLogger(__name__)


def last_webhook_at(state: SyncStateStore) -> Optional[datetime]:
    raw = state.get(LAST_WEBHOOK_KEY)
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        logger.error(f"Unparsable last-webhook timestamp {raw!r}; treating as never received")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def check_health(
    state: SyncStateStore,
    queue: SyncQueue,
    threshold: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    threshold = threshold or timedelta(hours=settings.WEBHOOK_HEALTH_THRESHOLD_HOURS)
    now = now or datetime.now(timezone.utc)

    last = last_webhook_at(state)
    if last is None:
        logger.warning("No webhook ever recorded; arming polling as a precaution")
        queue.arm_schedule()
        return {"status": "armed", "reason": "never_received", "hours_since": None}

    hours_since = (now - last).total_seconds() / 3600
    if now - last > threshold:
        logger.error(f"Webhooks look down (last event {hours_since:.2f}h ago); arming polling")
        queue.arm_schedule()
        return {"status": "armed", "reason": "stale", "hours_since": round(hours_since, 2)}

    logger.info(f"Webhooks healthy; last event {hours_since:.2f}h ago")
    return {"status": "healthy", "reason": None, "hours_since": round(hours_since, 2)}
