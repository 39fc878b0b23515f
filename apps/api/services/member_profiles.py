"""Bulk refresh of member tokens and Strava profiles (maintenance)."""

import logging
from typing import Dict

from core.cache import invalidate_member_cache
from services.member_store import MemberStore
from services.strava_client import StravaActivityClient, StravaAPIError, StravaAuthError

logger = logging.getLogger(__name__)


def refresh_member_profiles(members: MemberStore, client: StravaActivityClient) -> Dict[str, int]:
    """
    Force a token refresh for every member, then re-read their profile.

    Members without a refresh token are skipped. A failure for one member is
    counted and the loop carries on.
    """
    summary = {"succeeded": 0, "failed": 0, "skipped": 0}

    for member in members.all_members():
        athlete_id = member.athlete_id
        if not members.get_refresh_token(athlete_id):
            summary["skipped"] += 1
            continue
        try:
            client.refresh_access_token(athlete_id)
            athlete_info = client.fetch_athlete(athlete_id)
        except (StravaAuthError, StravaAPIError) as e:
            logger.error(f"Profile refresh failed for member {athlete_id}: {e}")
            summary["failed"] += 1
            continue
        members.update_profile(athlete_id, athlete_info)
        summary["succeeded"] += 1

    invalidate_member_cache()
    logger.info(
        f"Profile refresh complete: {summary['succeeded']} succeeded, "
        f"{summary['failed']} failed, {summary['skipped']} skipped"
    )
    return summary
