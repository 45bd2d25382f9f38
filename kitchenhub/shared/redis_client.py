"""
Shared Redis connection
Used by the overstay scanner's cross-process lock; supports REDIS_URL (Upstash and
other managed Redis) or individual host settings
"""

import logging
from typing import Optional

import redis

from ..config import REDIS_HOST, REDIS_PASSWORD, REDIS_PORT, REDIS_SSL, REDIS_URL

logger = logging.getLogger(__name__)

redis_client: Optional[redis.Redis] = None


def _mask(url: str) -> str:
    if "@" not in url:
        return url
    scheme_and_creds, host = url.split("@", 1)
    scheme = scheme_and_creds.split("://", 1)[0]
    return f"{scheme}://***@{host}"


def get_redis_client() -> redis.Redis:
    """
    Get or create the Redis client.
    Raises if Redis is unreachable; callers decide whether that is fatal.
    """
    global redis_client

    if redis_client is None:
        if REDIS_URL:
            logger.info(f"📡 Using Redis URL connection: {_mask(REDIS_URL)}")
            client = redis.from_url(
                REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=15,
                socket_timeout=30,
                retry_on_timeout=True,
                health_check_interval=30,
            )
        else:
            ssl_status = "with SSL" if REDIS_SSL else "without SSL"
            logger.info(f"📡 Using Redis at {REDIS_HOST}:{REDIS_PORT} ({ssl_status})")
            client = redis.Redis(
                host=REDIS_HOST,
                port=REDIS_PORT,
                password=REDIS_PASSWORD,
                ssl=REDIS_SSL,
                decode_responses=True,
                socket_connect_timeout=15,
                socket_timeout=30,
                retry_on_timeout=True,
                health_check_interval=30,
            )

        try:
            client.ping()
        except redis.RedisError as e:
            logger.error(f"❌ Failed to connect to Redis: {str(e)}")
            raise
        logger.info("Redis connected successfully")
        redis_client = client

    return redis_client
