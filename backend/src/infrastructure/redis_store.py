"""Redis connection for the webhook dedup and freshness stores."""

import logging
from typing import Optional

from redis import Redis
from redis.exceptions import RedisError

from config import get_settings

logger = logging.getLogger(__name__)


def get_redis_client(url: Optional[str] = None) -> Optional[Redis]:
    """Get a Redis client shared by the webhook stores.

    Returns None if Redis is not configured or not reachable; callers then
    fall back to the in-process stores.
    """
    url = url or get_settings().REDIS_URL
    if not url:
        return None
    try:
        client = Redis.from_url(url, decode_responses=True, socket_connect_timeout=2)
        client.ping()
        return client
    except RedisError as e:
        logger.warning(f"Redis unavailable at startup, using in-process stores: {e}")
        return None
