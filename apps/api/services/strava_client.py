"""
Strava activity client.

Thin wrapper over the Strava v3 REST API for the sync pipeline:
- GET /athlete
- GET /athlete/activities (time window, filtered to the club's rules)
- GET /activities/{id}
- POST /oauth/token (refresh_token grant)

Auth policy: a request that comes back 401 gets exactly one token refresh and
one retry. A second 401 is terminal for that call. Any other non-2xx status
(or a network error) is terminal too; callers decide whether to carry on.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import requests

from core.config import settings
from services.activity_filter import ActivityFilter
from services.member_store import MemberStore, normalize_athlete_id

logger = logging.getLogger(__name__)

STRAVA_API_BASE = "https://www.strava.com/api/v3"
STRAVA_TOKEN_URL = "https://www.strava.com/oauth/token"

# Refresh a little before Strava's stated expiry.
TOKEN_EXPIRY_SKEW = timedelta(minutes=5)


class StravaAuthError(RuntimeError):
    """No usable token for the member, or Strava rejected it after a refresh."""

    def __init__(self, athlete_id: str, message: str):
        super().__init__(f"athlete {athlete_id}: {message}")
        self.athlete_id = athlete_id


class TokenRefreshError(StravaAuthError):
    """The refresh_token exchange was impossible or failed."""


class StravaAPIError(RuntimeError):
    """Non-2xx (other than a handled 401) or network failure talking to Strava."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class StravaActivityClient:
    def __init__(
        self,
        members: MemberStore,
        activity_filter: Optional[ActivityFilter] = None,
        timeout: Optional[int] = None,
        per_page: Optional[int] = None,
    ):
        self.members = members
        self.activity_filter = activity_filter or ActivityFilter.from_settings()
        self.timeout = timeout or settings.EXTERNAL_API_TIMEOUT
        self.per_page = per_page or settings.STRAVA_ACTIVITIES_PER_PAGE

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def refresh_access_token(self, athlete_id: Any) -> Dict[str, Any]:
        """
        Exchange the member's stored refresh token for a new pair and persist it.

        Returns {"access_token": ..., "expires_at": datetime}.
        Raises TokenRefreshError if there is no refresh token or Strava says no.
        """
        athlete_id = normalize_athlete_id(athlete_id)
        refresh_token = self.members.get_refresh_token(athlete_id)
        if not refresh_token:
            logger.error(f"No refresh token on file for athlete {athlete_id}")
            raise TokenRefreshError(athlete_id, "no refresh token on file")

        data = {
            "client_id": settings.STRAVA_CLIENT_ID,
            "client_secret": settings.STRAVA_CLIENT_SECRET,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        try:
            response = requests.post(STRAVA_TOKEN_URL, data=data, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Token refresh request failed for athlete {athlete_id}: {e}")
            raise TokenRefreshError(athlete_id, f"refresh request failed: {e}") from e

        if response.status_code != 200:
            logger.error(
                f"Token refresh rejected for athlete {athlete_id}: HTTP {response.status_code}",
                extra={"extra_fields": {"athlete_id": athlete_id, "status_code": response.status_code}},
            )
            raise TokenRefreshError(athlete_id, f"refresh rejected with HTTP {response.status_code}")

        token_data = response.json()
        access_token = token_data.get("access_token")
        if not access_token:
            raise TokenRefreshError(athlete_id, "refresh response has no access_token")

        if token_data.get("expires_in") is not None:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(token_data["expires_in"]))
        elif token_data.get("expires_at") is not None:
            expires_at = datetime.fromtimestamp(int(token_data["expires_at"]), tz=timezone.utc)
        else:
            expires_at = None

        self.members.save_tokens(athlete_id, access_token, token_data.get("refresh_token"), expires_at)
        logger.info(f"Refreshed Strava token for athlete {athlete_id}")
        return {"access_token": access_token, "expires_at": expires_at}

    def _current_access_token(self, athlete_id: str) -> str:
        member = self.members.get(athlete_id)
        if member is None:
            raise StravaAuthError(athlete_id, "member not found")

        access_token = self.members.get_access_token(athlete_id)
        expires_at = _as_utc(member.token_expires_at)
        expired = expires_at is not None and expires_at - TOKEN_EXPIRY_SKEW <= datetime.now(timezone.utc)

        if access_token and not expired:
            return access_token

        logger.info(f"Access token for athlete {athlete_id} {'expired' if access_token else 'missing'}; refreshing")
        return self.refresh_access_token(athlete_id)["access_token"]

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _send(self, url: str, access_token: str, params: Optional[Dict[str, Any]]) -> requests.Response:
        try:
            return requests.get(
                url,
                headers={"Authorization": f"Bearer {access_token}"},
                params=params,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise StravaAPIError(f"GET {url} failed: {e}") from e

    def _get_json(self, athlete_id: str, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{STRAVA_API_BASE}{path}"
        access_token = self._current_access_token(athlete_id)

        response = self._send(url, access_token, params)
        if response.status_code == 401:
            logger.info(f"Strava returned 401 for athlete {athlete_id} on {path}; refreshing once")
            access_token = self.refresh_access_token(athlete_id)["access_token"]
            response = self._send(url, access_token, params)
            if response.status_code == 401:
                logger.error(f"Strava still returned 401 for athlete {athlete_id} after refresh")
                raise StravaAuthError(athlete_id, f"unauthorized on {path} after token refresh")

        if response.status_code != 200:
            logger.error(
                f"Strava GET {path} failed for athlete {athlete_id}: HTTP {response.status_code}",
                extra={"extra_fields": {"athlete_id": athlete_id, "status_code": response.status_code}},
            )
            raise StravaAPIError(f"GET {path} returned HTTP {response.status_code}", status_code=response.status_code)

        return response.json()

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def fetch_athlete(self, athlete_id: Any) -> Dict[str, Any]:
        return self._get_json(normalize_athlete_id(athlete_id), "/athlete")

    def fetch_athlete_activities(self, athlete_id: Any, after_ts: int, before_ts: int) -> List[Dict[str, Any]]:
        """
        Activities started in (after_ts, before_ts), already filtered to the
        allowed types and visibilities.
        """
        athlete_id = normalize_athlete_id(athlete_id)
        activities: List[Dict[str, Any]] = []
        page = 1
        while True:
            batch = self._get_json(
                athlete_id,
                "/athlete/activities",
                params={"after": int(after_ts), "before": int(before_ts), "per_page": self.per_page, "page": page},
            )
            if not isinstance(batch, list):
                raise StravaAPIError(f"unexpected activities payload for athlete {athlete_id}")
            activities.extend(batch)
            if len(batch) < self.per_page:
                break
            page += 1

        allowed = [a for a in activities if self.activity_filter.is_allowed(a)]
        logger.debug(
            f"Fetched {len(activities)} activities for athlete {athlete_id}, {len(allowed)} pass the filter"
        )
        return allowed

    def fetch_activity_by_id(self, activity_id: Any, athlete_id: Any) -> Dict[str, Any]:
        return self._get_json(normalize_athlete_id(athlete_id), f"/activities/{int(activity_id)}")
