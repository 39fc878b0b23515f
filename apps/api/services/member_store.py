"""
Member / token store.

Owns the member table: who is connected, their (encrypted) Strava tokens and
when they were last synced. The sync pipeline only ever holds transient
copies of these values.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from core.cache import invalidate_member_cache
from models import Member
from services.token_encryption import decrypt_token, encrypt_token

logger = logging.getLogger(__name__)


def normalize_athlete_id(value: Any) -> str:
    """
    Canonical string form of a Strava athlete id.

    Ids that went through a float somewhere ("12345.0") lose the suffix.
    """
    if value is None:
        return ""
    return str(value).strip().split(".")[0]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MemberStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, athlete_id: Any) -> Optional[Member]:
        key = normalize_athlete_id(athlete_id)
        if not key:
            return None
        return self.db.get(Member, key)

    def get_profile(self, member: Member) -> Optional[Dict[str, Any]]:
        """Decoded Strava profile. Raises ValueError when the blob is corrupt."""
        if not member.profile_json:
            return None
        raw = decrypt_token(member.profile_json)
        if raw is None:
            raise ValueError(f"profile blob for member {member.athlete_id} cannot be decrypted")
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"profile blob for member {member.athlete_id} is not JSON: {e}")

    def all_members(self) -> List[Member]:
        """Every member whose stored record parses. Corrupt rows are logged and skipped."""
        members = []
        for member in self.db.query(Member).order_by(Member.created_at, Member.athlete_id).all():
            try:
                self.get_profile(member)
            except ValueError as e:
                logger.error(
                    f"Skipping corrupt member record {member.athlete_id}: {e}",
                    extra={"extra_fields": {"athlete_id": member.athlete_id}},
                )
                continue
            members.append(member)
        return members

    def all_member_ids(self) -> List[str]:
        return [m.athlete_id for m in self.all_members()]

    def authorized_member_ids(self) -> List[str]:
        """Members that still grant access; deauthorized athletes are never polled."""
        return [m.athlete_id for m in self.all_members() if m.is_authorized]

    def get_access_token(self, athlete_id: Any) -> Optional[str]:
        member = self.get(athlete_id)
        if member is None:
            return None
        return decrypt_token(member.strava_access_token)

    def get_refresh_token(self, athlete_id: Any) -> Optional[str]:
        member = self.get(athlete_id)
        if member is None:
            return None
        return decrypt_token(member.strava_refresh_token)

    def has_token(self, athlete_id: Any) -> bool:
        member = self.get(athlete_id)
        if member is None or not member.is_authorized:
            return False
        return bool(member.strava_access_token or member.strava_refresh_token)

    def save_tokens(
        self,
        athlete_id: Any,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
    ) -> Member:
        member = self.get(athlete_id)
        if member is None:
            raise LookupError(f"member {athlete_id} not found")
        member.strava_access_token = encrypt_token(access_token)
        # Strava may or may not rotate the refresh token.
        if refresh_token:
            member.strava_refresh_token = encrypt_token(refresh_token)
        member.token_expires_at = _as_utc(expires_at)
        member.is_authorized = True
        self.db.commit()
        return member

    def touch_last_synced(self, athlete_id: Any, at: datetime) -> None:
        member = self.get(athlete_id)
        if member is None:
            logger.warning(f"Cannot set last_synced_at: member {athlete_id} not found")
            return
        member.last_synced_at = _as_utc(at)
        self.db.commit()

    def last_synced(self, member: Member) -> Optional[datetime]:
        return _as_utc(member.last_synced_at)

    def upsert_from_oauth(self, token_data: Dict[str, Any], athlete_info: Optional[Dict[str, Any]] = None) -> Member:
        """
        Create (first authorization) or refresh a member from an OAuth token response.

        token_data is Strava's /oauth/token body; it embeds the athlete summary
        for authorization_code grants. athlete_info overrides it when given.
        """
        athlete = athlete_info or token_data.get("athlete") or {}
        athlete_id = normalize_athlete_id(athlete.get("id"))
        if not athlete_id:
            raise ValueError("OAuth response has no athlete id")

        member = self.get(athlete_id)
        created = member is None
        if created:
            member = Member(athlete_id=athlete_id)
            self.db.add(member)

        name = " ".join(p for p in [athlete.get("firstname"), athlete.get("lastname")] if p).strip()
        member.display_name = name or member.display_name or athlete_id
        member.profile_json = encrypt_token(json.dumps(athlete))
        member.strava_access_token = encrypt_token(token_data.get("access_token"))
        if token_data.get("refresh_token"):
            member.strava_refresh_token = encrypt_token(token_data.get("refresh_token"))
        if token_data.get("expires_at"):
            member.token_expires_at = datetime.fromtimestamp(int(token_data["expires_at"]), tz=timezone.utc)
        member.is_authorized = True
        self.db.commit()

        invalidate_member_cache()
        logger.info(f"{'Created' if created else 'Updated'} member {athlete_id} from OAuth")
        return member

    def update_profile(self, athlete_id: Any, athlete_info: Dict[str, Any]) -> None:
        member = self.get(athlete_id)
        if member is None:
            return
        name = " ".join(p for p in [athlete_info.get("firstname"), athlete_info.get("lastname")] if p).strip()
        if name:
            member.display_name = name
        member.profile_json = encrypt_token(json.dumps(athlete_info))
        self.db.commit()

    def mark_deauthorized(self, athlete_id: Any) -> bool:
        member = self.get(athlete_id)
        if member is None:
            logger.info(f"Deauthorization for unknown member {athlete_id}; nothing to do")
            return False
        member.strava_access_token = None
        member.strava_refresh_token = None
        member.token_expires_at = None
        member.is_authorized = False
        self.db.commit()
        invalidate_member_cache()
        logger.info(f"Member {athlete_id} revoked Strava access; tokens cleared")
        return True
