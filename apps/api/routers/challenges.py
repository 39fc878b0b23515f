"""
Challenge participation.

The web app calls this on behalf of a member, so it sits behind the admin
token like the other write operations.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from core.auth import require_admin
from core.database import get_db
from core.exceptions import NotFoundError
from services.challenge_progress import join_challenge, recompute_member_progress

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/challenges", tags=["challenges"], dependencies=[Depends(require_admin)])


class JoinChallengeRequest(BaseModel):
    user_id: str = Field(..., min_length=1, description="Strava athlete id of the member joining")


@router.post("/{challenge_id}/join", status_code=status.HTTP_201_CREATED)
def join(challenge_id: str, request: JoinChallengeRequest, db: Session = Depends(get_db)):
    try:
        participant = join_challenge(db, challenge_id, request.user_id)
    except LookupError:
        raise NotFoundError("Challenge", challenge_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    # Swims already stored inside the window count from the start.
    recompute_member_progress(db, participant.user_id)
    db.refresh(participant)
    logger.info(f"Member {participant.user_id} joined challenge {challenge_id}")
    return {
        "challenge_id": participant.challenge_id,
        "user_id": participant.user_id,
        "progress": participant.progress,
    }
