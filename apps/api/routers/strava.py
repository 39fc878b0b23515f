"""
Strava connect flow.

A member becomes known to the sync pipeline the first time they authorize
the club's Strava app: the callback stores them and queues an initial sync.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from core.config import settings
from core.database import get_db
from services.member_store import MemberStore
from services.strava_oauth import StravaOAuthError, exchange_code_for_token, get_auth_url

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/strava", tags=["strava"])


@router.get("/auth-url")
def get_strava_auth_url(state: str = Query(None, description="Opaque value echoed back to the callback")):
    """
    Get Strava OAuth authorization URL.
    Returns URL that the member should be redirected to.
    """
    try:
        return {"auth_url": get_auth_url(state=state)}
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/callback")
def strava_callback(
    code: str = Query(None, description="Authorization code from Strava"),
    error: str = Query(None, description="Set by Strava when the member denied access"),
    db: Session = Depends(get_db),
):
    """
    Handle Strava OAuth callback: create or refresh the member, queue their
    first sync, send them back to the web app.
    """
    web_base = settings.WEB_APP_BASE_URL
    if error or not code:
        logger.info(f"Strava authorization not granted: {error or 'no code'}")
        return RedirectResponse(url=f"{web_base}/?strava=denied", status_code=302)

    try:
        token_data = exchange_code_for_token(code)
    except StravaOAuthError as e:
        logger.error(f"Strava OAuth exchange failed: {e}")
        return RedirectResponse(url=f"{web_base}/?strava=error", status_code=302)

    try:
        member = MemberStore(db).upsert_from_oauth(token_data)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    from tasks.sync_tasks import enqueue_members_task
    enqueue_members_task.delay([member.athlete_id])
    logger.info(f"Member {member.athlete_id} connected; initial sync queued")

    return RedirectResponse(url=f"{web_base}/?strava=connected", status_code=302)
