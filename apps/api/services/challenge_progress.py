"""
Challenge progress recompute.

Progress is never patched incrementally: every recompute sums the member's
stored activity distance inside the challenge window from scratch. The
COMMUNITY_USER_ID participant row carries the club-wide total for
COMMUNITY challenges.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.cache import invalidate_challenge_cache
from models import Activity, Challenge, ChallengeParticipant, COMMUNITY_USER_ID
from services.member_store import normalize_athlete_id

logger = logging.getLogger(__name__)

ACTIVE_STATUS = "Active"
COMMUNITY_TYPE = "COMMUNITY"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _distance_in_window(db: Session, challenge: Challenge, athlete_id: str = None) -> float:
    query = db.query(func.coalesce(func.sum(Activity.distance_m), 0.0)).filter(
        Activity.start_date >= challenge.start_date,
        Activity.start_date <= challenge.end_date,
    )
    if athlete_id is not None:
        query = query.filter(Activity.athlete_id == athlete_id)
    return float(query.scalar() or 0.0)


def recompute_member_progress(db: Session, athlete_id: Any) -> int:
    """
    Recompute every active challenge the member joined.

    Returns how many participant rows were updated. Failures are logged and
    reported as 0 so a sync never fails because of a leaderboard side effect.
    """
    athlete_id = normalize_athlete_id(athlete_id)
    try:
        rows = (
            db.query(ChallengeParticipant, Challenge)
            .join(Challenge, Challenge.challenge_id == ChallengeParticipant.challenge_id)
            .filter(
                ChallengeParticipant.user_id == athlete_id,
                Challenge.status == ACTIVE_STATUS,
            )
            .all()
        )
        now = _utcnow()
        for participant, challenge in rows:
            participant.progress = _distance_in_window(db, challenge, athlete_id)
            participant.last_updated = now
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            f"Challenge progress recompute failed for member {athlete_id}: {e}",
            extra={"extra_fields": {"athlete_id": athlete_id}},
        )
        return 0

    for _, challenge in rows:
        invalidate_challenge_cache(challenge.challenge_id)
    if rows:
        logger.info(f"Recomputed {len(rows)} challenge(s) for member {athlete_id}")
    return len(rows)


def recompute_community_progress(db: Session) -> Dict[str, float]:
    """Refresh the club-wide total of every active COMMUNITY challenge."""
    challenges: List[Challenge] = (
        db.query(Challenge)
        .filter(Challenge.status == ACTIVE_STATUS, Challenge.challenge_type == COMMUNITY_TYPE)
        .all()
    )
    totals: Dict[str, float] = {}
    now = _utcnow()
    for challenge in challenges:
        total = _distance_in_window(db, challenge)
        participant = (
            db.query(ChallengeParticipant)
            .filter(
                ChallengeParticipant.challenge_id == challenge.challenge_id,
                ChallengeParticipant.user_id == COMMUNITY_USER_ID,
            )
            .first()
        )
        if participant is None:
            participant = ChallengeParticipant(challenge_id=challenge.challenge_id, user_id=COMMUNITY_USER_ID)
            db.add(participant)
        participant.progress = total
        participant.last_updated = now
        totals[challenge.challenge_id] = total
    db.commit()

    for challenge_id in totals:
        invalidate_challenge_cache(challenge_id)
    logger.info(f"Community progress updated for {len(totals)} challenge(s)")
    return totals


def join_challenge(db: Session, challenge_id: str, user_id: Any) -> ChallengeParticipant:
    """Add a member to a challenge with zero progress. Raises ValueError on duplicates."""
    user_id = normalize_athlete_id(user_id)
    if user_id == COMMUNITY_USER_ID:
        raise ValueError("reserved participant id")
    if db.get(Challenge, challenge_id) is None:
        raise LookupError(f"challenge {challenge_id} not found")
    existing = (
        db.query(ChallengeParticipant)
        .filter(ChallengeParticipant.challenge_id == challenge_id, ChallengeParticipant.user_id == user_id)
        .first()
    )
    if existing is not None:
        raise ValueError(f"member {user_id} already joined {challenge_id}")

    participant = ChallengeParticipant(challenge_id=challenge_id, user_id=user_id, progress=0.0, last_updated=_utcnow())
    db.add(participant)
    db.commit()
    invalidate_challenge_cache(challenge_id)
    return participant
