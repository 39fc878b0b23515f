"""
Strava OAuth (authorization_code flow) for connecting new members.
"""
import logging
from typing import Dict, Optional
from urllib.parse import urlencode

import requests

from core.config import settings

logger = logging.getLogger(__name__)

STRAVA_AUTHORIZE_URL = "https://www.strava.com/oauth/authorize"
STRAVA_TOKEN_URL = "https://www.strava.com/oauth/token"

# activity:read_all so followers_only activities come through too.
STRAVA_SCOPES = "read,activity:read_all"


class StravaOAuthError(RuntimeError):
    """The authorization code could not be exchanged."""


def get_auth_url(state: Optional[str] = None) -> str:
    if not settings.STRAVA_CLIENT_ID:
        raise ValueError("STRAVA_CLIENT_ID is not set")

    params = {
        "client_id": settings.STRAVA_CLIENT_ID,
        "redirect_uri": settings.STRAVA_REDIRECT_URI,
        "response_type": "code",
        "scope": STRAVA_SCOPES,
        "approval_prompt": "auto",
    }
    if state:
        params["state"] = state
    return f"{STRAVA_AUTHORIZE_URL}?{urlencode(params)}"


def exchange_code_for_token(code: str) -> Dict:
    """
    Returns Strava's token body: access_token, refresh_token, expires_at and
    the athlete summary.
    """
    data = {
        "client_id": settings.STRAVA_CLIENT_ID,
        "client_secret": settings.STRAVA_CLIENT_SECRET,
        "code": code,
        "grant_type": "authorization_code",
    }
    try:
        response = requests.post(STRAVA_TOKEN_URL, data=data, timeout=settings.EXTERNAL_API_TIMEOUT)
    except requests.RequestException as e:
        raise StravaOAuthError(f"token exchange request failed: {e}") from e

    if response.status_code != 200:
        logger.error(f"Strava code exchange failed: HTTP {response.status_code}")
        raise StravaOAuthError(f"token exchange rejected with HTTP {response.status_code}")
    return response.json()
