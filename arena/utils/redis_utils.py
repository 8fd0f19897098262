"""
Redis utility module for the push-invalidation transport.

Provides Redis URL validation and client construction. Redis is optional:
without it invalidation signals stay in-process and polling alone keeps
clients correct.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from arena.config import Config

logger = logging.getLogger(__name__)


class RedisUtils:
    """Centralized Redis configuration and connection utilities."""

    @staticmethod
    def get_secure_redis_url() -> Optional[str]:
        """Get the configured Redis URL if it passes validation."""
        redis_url = Config.REDIS_URL
        if not redis_url:
            return None

        if RedisUtils._validate_redis_security(redis_url):
            return redis_url

        logger.error("REDIS_URL contains insecure configuration")
        return None

    @staticmethod
    def _validate_redis_security(redis_url: str) -> bool:
        """Production deployments require TLS and credentials."""
        if not redis_url.startswith(('redis://', 'rediss://')):
            logger.error(f"Unsupported Redis URL scheme: {redis_url.split(':', 1)[0]}")
            return False

        if Config.DEBUG:
            if not redis_url.startswith('rediss://'):
                logger.warning("Development mode: using a non-TLS Redis connection")
            return True

        if not redis_url.startswith('rediss://'):
            logger.error("Production Redis must use rediss:// (TLS) protocol")
            return False
        if '@' not in redis_url:
            logger.error("Production Redis must include authentication credentials")
            return False
        return True

    @staticmethod
    async def create_redis_client() -> Optional[redis.Redis]:
        """Create and ping a Redis client; None when Redis is not configured or unreachable."""
        redis_url = RedisUtils.get_secure_redis_url()
        if not redis_url:
            return None

        try:
            client = redis.from_url(redis_url, decode_responses=True)
            await client.ping()
            logger.info("Successfully connected to Redis")
            return client
        except (RedisError, OSError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            return None
