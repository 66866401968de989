"""
Rate limiting for API endpoints.

Simple in-memory sliding windows using deques, keyed by player and action.
"""

import time
import asyncio
from collections import defaultdict, deque
import logging

from fastapi import Request

from arena.utils.arena_exceptions import RateLimitError

logger = logging.getLogger(__name__)

class SimpleRateLimiter:
    """In-memory rate limiter.
    
    History lives in process memory, so limits are per server instance.
    """
    
    def __init__(self):
        self._requests = defaultdict(deque)
        self._lock = asyncio.Lock()
    
    async def is_allowed(self, player_key: str, action: str, limit: int, window: int) -> bool:
        """Record a request and report whether it is within the limit."""
        if limit <= 0 or window <= 0:
            return False
            
        key = f"{player_key}:{action}"
        now = time.time()
        
        async with self._lock:
            requests = self._requests[key]
            while requests and requests[0] < now - window:
                requests.popleft()
            
            if len(requests) < limit:
                requests.append(now)
                return True
            
            logger.info(f"Rate limit hit for {key}")
            return False

def rate_limit(action: str, limit: int = 1, window: int = 60):
    """FastAPI dependency that enforces a per-player limit for one action."""
    async def dependency(request: Request):
        rate_limiter = request.app.state.rate_limiter
        player_key = request.headers.get('X-Player-Id') or (request.client.host if request.client else 'anonymous')
        if not await rate_limiter.is_allowed(player_key, action, limit, window):
            raise RateLimitError(action)
    return dependency
