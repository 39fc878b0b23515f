"""
Batch sync queue.

A FIFO of member ids persisted in the shared state store, guarded by one
Redis lock for every read-modify-write:

- enqueue() waits up to SYNC_QUEUE_ENQUEUE_LOCK_TIMEOUT_S for the lock and
  raises QueueLockTimeout rather than dropping ids.
- drain() tries for SYNC_QUEUE_DRAIN_LOCK_TIMEOUT_S; a busy lock means
  another drain is running, so this one is skipped.

Beat fires the drain task every 15 minutes; the "armed" flag decides whether
it does anything. Arming is a flag write, so arming twice is the same as
arming once. An empty queue refills from every known member; with no
members at all the schedule disarms itself.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from core.cache import invalidate_activity_caches
from core.config import settings
from services.member_store import normalize_athlete_id
from services.sync_state import (
    DRAIN_ARMED_KEY,
    QUEUE_KEY,
    QUEUE_LOCK_KEY,
    LockNotAcquired,
    SyncStateStore,
)

logger = logging.getLogger(__name__)


class QueueLockTimeout(RuntimeError):
    """The queue lock could not be taken within the enqueue wait window."""


@dataclass
class DrainResult:
    status: str  # "processed" | "skipped_locked" | "disarmed" | "not_armed"
    processed: List[str] = field(default_factory=list)
    remaining: int = 0
    refilled: bool = False
    any_added: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "processed": list(self.processed),
            "remaining": self.remaining,
            "refilled": self.refilled,
            "any_added": self.any_added,
        }


class SyncQueue:
    def __init__(
        self,
        state: SyncStateStore,
        sync_member: Callable[[str], bool],
        member_ids: Callable[[], List[str]],
        invalidate_caches: Callable[[], Any] = invalidate_activity_caches,
        max_per_run: Optional[int] = None,
        enqueue_wait_s: Optional[float] = None,
        drain_wait_s: Optional[float] = None,
    ):
        self.state = state
        self.sync_member = sync_member
        self.member_ids = member_ids
        self.invalidate_caches = invalidate_caches
        self.max_per_run = max_per_run or settings.SYNC_QUEUE_MAX_USERS_PER_RUN
        self.enqueue_wait_s = enqueue_wait_s if enqueue_wait_s is not None else settings.SYNC_QUEUE_ENQUEUE_LOCK_TIMEOUT_S
        self.drain_wait_s = drain_wait_s if drain_wait_s is not None else settings.SYNC_QUEUE_DRAIN_LOCK_TIMEOUT_S

    # ------------------------------------------------------------------
    # Persistence (callers hold the lock)
    # ------------------------------------------------------------------

    def pending(self) -> List[str]:
        raw = self.state.get(QUEUE_KEY)
        if not raw:
            return []
        try:
            queue = json.loads(raw)
        except json.JSONDecodeError:
            logger.error(f"Sync queue payload is corrupt; starting from empty: {raw[:80]!r}")
            return []
        if not isinstance(queue, list):
            logger.error("Sync queue payload is not a list; starting from empty")
            return []
        return [normalize_athlete_id(i) for i in queue]

    def _save(self, queue: List[str]) -> None:
        self.state.set(QUEUE_KEY, json.dumps(queue))

    @staticmethod
    def _append_unique(queue: List[str], ids: Iterable[Any]) -> int:
        added = 0
        for raw_id in ids:
            athlete_id = normalize_athlete_id(raw_id)
            if athlete_id and athlete_id not in queue:
                queue.append(athlete_id)
                added += 1
        return added

    # ------------------------------------------------------------------
    # Schedule flag
    # ------------------------------------------------------------------

    def arm_schedule(self) -> None:
        if not self.is_armed():
            logger.info("Arming sync queue drain schedule")
        self.state.set(DRAIN_ARMED_KEY, datetime.now(timezone.utc).isoformat())

    def disarm_schedule(self) -> None:
        if self.is_armed():
            logger.info("Disarming sync queue drain schedule")
        self.state.delete(DRAIN_ARMED_KEY)

    def is_armed(self) -> bool:
        return self.state.get(DRAIN_ARMED_KEY) is not None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def enqueue(self, athlete_ids: Iterable[Any]) -> int:
        """Append ids not already queued and arm the drain. Returns how many were new."""
        ids = list(athlete_ids)
        try:
            with self.state.lock(QUEUE_LOCK_KEY, wait_s=self.enqueue_wait_s):
                queue = self.pending()
                added = self._append_unique(queue, ids)
                self._save(queue)
                self.arm_schedule()
        except LockNotAcquired as e:
            logger.warning(f"Enqueue of {len(ids)} member(s) failed: {e}")
            raise QueueLockTimeout(str(e)) from e

        logger.info(f"Enqueued {added} member(s); queue size is now {len(queue)}")
        return added

    def drain(self) -> DrainResult:
        """Sync up to max_per_run queued members in FIFO order."""
        try:
            with self.state.lock(QUEUE_LOCK_KEY, wait_s=self.drain_wait_s):
                return self._drain_locked()
        except LockNotAcquired:
            logger.warning("Could not obtain sync queue lock; another drain is likely running")
            return DrainResult(status="skipped_locked", remaining=-1)

    def _drain_locked(self) -> DrainResult:
        queue = self.pending()
        refilled = False

        if not queue:
            logger.info("Sync queue is empty; refilling with all members")
            self._append_unique(queue, self.member_ids())
            if not queue:
                logger.info("No members to sync; disarming drain schedule")
                self._save(queue)
                self.disarm_schedule()
                return DrainResult(status="disarmed")
            refilled = True
            self.arm_schedule()

        batch, rest = queue[: self.max_per_run], queue[self.max_per_run:]
        logger.info(f"Processing {len(batch)} member(s) from sync queue; {len(rest)} remaining")

        any_added = False
        for athlete_id in batch:
            try:
                if self.sync_member(athlete_id):
                    any_added = True
            except Exception:
                # One member must not take down the rest of the batch.
                logger.exception(
                    f"Sync failed for member {athlete_id}",
                    extra={"extra_fields": {"athlete_id": athlete_id}},
                )

        self._save(rest)

        if any_added:
            self.invalidate_caches()

        return DrainResult(
            status="processed",
            processed=batch,
            remaining=len(rest),
            refilled=refilled,
            any_added=any_added,
        )
