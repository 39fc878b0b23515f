from sqlalchemy import Column, Integer, BigInteger, Boolean, Float, DateTime, Text, String, Index, UniqueConstraint
from sqlalchemy.sql import func
from core.database import Base
from datetime import datetime, timezone


# Reserved participant id holding the club-wide total of a COMMUNITY challenge.
COMMUNITY_USER_ID = "_COMMUNITY_"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Member(Base):
    """A club member who connected Strava. Keyed by the Strava athlete id."""
    __tablename__ = "member"

    # Normalized string form (see services.member_store.normalize_athlete_id)
    athlete_id = Column(String(32), primary_key=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=True)
    display_name = Column(Text, nullable=True)

    # Fernet-encrypted JSON of the Strava athlete profile
    profile_json = Column(Text, nullable=True)

    # --- STRAVA CREDENTIALS (encrypted at rest) ---
    strava_access_token = Column(Text, nullable=True)
    strava_refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    is_authorized = Column(Boolean, default=True, nullable=False)

    # Null means never synced; first sync then looks back further.
    last_synced_at = Column(DateTime(timezone=True), nullable=True)


class Activity(Base):
    __tablename__ = "activity"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # At most one row per Strava activity.
    strava_activity_id = Column(BigInteger, nullable=False)
    athlete_id = Column(String(32), nullable=False, index=True)
    name = Column(Text, nullable=True)
    activity_type = Column(Text, nullable=False)
    distance_m = Column(Float, default=0, nullable=False)
    moving_time_s = Column(Integer, default=0, nullable=False)
    start_date = Column(DateTime(timezone=True), nullable=True, index=True)
    visibility = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("strava_activity_id", name="uq_activity_strava_activity_id"),
        Index("ix_activity_athlete_start", "athlete_id", "start_date"),
    )


class Challenge(Base):
    __tablename__ = "challenge"

    challenge_id = Column(String(64), primary_key=True)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    challenge_type = Column(Text, default="INDIVIDUAL", nullable=False)  # INDIVIDUAL | COMMUNITY
    status = Column(Text, default="Active", nullable=False)  # Active | Upcoming | Completed
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    target_value = Column(Float, nullable=True)  # metres
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)


class ChallengeParticipant(Base):
    __tablename__ = "challenge_participant"

    id = Column(Integer, primary_key=True, autoincrement=True)
    challenge_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(32), nullable=False)
    progress = Column(Float, default=0, nullable=False)
    last_updated = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("challenge_id", "user_id", name="uq_challenge_participant"),
    )
