"""
Redis Caching Layer

The leaderboard, feed and challenge views are cached in Redis by the read
side of the club app. This module owns the shared client and the
invalidation helpers the sync pipeline calls after it changes activity data.
Degrades gracefully if Redis is unavailable.
"""
import logging
from typing import Optional
import redis
from redis.exceptions import ConnectionError, TimeoutError, RedisError
from core.config import settings

logger = logging.getLogger(__name__)

# Keys derived from the activity table. Any ingest or delete makes them stale.
ACTIVITY_DERIVED_KEYS = (
    "recent_activities_feed",
    "leaderboard_this_month",
    "leaderboard_last_month",
    "leaderboard_challenge",
    "top_three_this_month",
)
ALL_CHALLENGES_KEY = "all_challenges"
ALL_MEMBERS_KEY = "all_members"

# Redis connection pool (singleton)
_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """Get Redis client with connection pooling. Returns None if Redis unavailable."""
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    try:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            retry_on_timeout=True,
            health_check_interval=30
        )
        _redis_client.ping()
        logger.info("Redis connection established")
        return _redis_client
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Redis unavailable: {e}. Caching disabled.")
        _redis_client = None
        return None


def challenge_details_key(challenge_id: str) -> str:
    return f"challenge_details_{challenge_id}"


def delete_cache(*keys: str) -> int:
    """Delete keys from cache. Returns how many existed."""
    client = get_redis_client()
    if not client or not keys:
        return 0

    try:
        return int(client.delete(*keys) or 0)
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Cache delete error for keys {keys}: {e}")
        return 0


def invalidate_activity_caches() -> int:
    """Drop every view computed from the activity table."""
    deleted = delete_cache(*ACTIVITY_DERIVED_KEYS)
    logger.info(f"Invalidated {deleted} activity-derived cache entries")
    return deleted


def invalidate_challenge_cache(challenge_id: str) -> int:
    return delete_cache(challenge_details_key(challenge_id), ALL_CHALLENGES_KEY)


def invalidate_member_cache() -> int:
    return delete_cache(ALL_MEMBERS_KEY)
