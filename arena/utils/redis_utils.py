"""
Redis helpers for the optional distributed lock used by batch jobs.

Redis is never required: without a configured REDIS_URL (or without the
client library) callers get None and run unlocked.
"""

import logging
from typing import Optional

try:
    import redis.asyncio as redis
    REDIS_AVAILABLE = True
except ImportError:
    redis = None
    REDIS_AVAILABLE = False

from arena.config import Config

logger = logging.getLogger(__name__)


class RedisUtils:
    """Redis URL validation, client creation and SET NX locks."""
    
    @staticmethod
    def get_redis_url() -> Optional[str]:
        """Get the configured Redis URL if it passes the security checks."""
        redis_url = Config.REDIS_URL
        if not redis_url:
            return None
        if not RedisUtils._validate_redis_security(redis_url):
            logger.error("REDIS_URL contains insecure configuration; distributed locks disabled")
            return None
        return redis_url
    
    @staticmethod
    def _validate_redis_security(redis_url: str) -> bool:
        """Production deployments need TLS (rediss://) and credentials."""
        if Config.DEBUG:
            if not redis_url.startswith(('rediss://', 'redis://localhost', 'redis://127.0.0.1')):
                logger.warning(f"Potentially insecure Redis URL in development: {redis_url}")
            return True
        
        if not redis_url.startswith('rediss://'):
            logger.error("Production Redis must use rediss:// (TLS) protocol")
            return False
        if '@' not in redis_url:
            logger.error("Production Redis must include authentication credentials")
            return False
        return True
    
    @staticmethod
    async def create_redis_client() -> Optional['redis.Redis']:
        """Create and ping a Redis client, or None when Redis is unavailable."""
        if not REDIS_AVAILABLE:
            return None
        
        redis_url = RedisUtils.get_redis_url()
        if not redis_url:
            return None
        
        try:
            client = redis.from_url(redis_url)
            await client.ping()
            logger.info("Successfully connected to Redis")
            return client
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            return None
    
    @staticmethod
    async def acquire_lock(client, lock_key: str, expiry_seconds: int) -> bool:
        """
        Try to take a self-expiring lock.
        
        The lock is never released explicitly; expiry doubles as debouncing
        for jobs that should run once per window.
        """
        return bool(await client.set(lock_key, "1", ex=expiry_seconds, nx=True))
