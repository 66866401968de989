"""
Services package for the Runner Arena backend.

Long-lived, stateful components owned by the application: matchmaking queue,
leaderboard cache, rate limiting and catalog refresh.
"""

from .base import BaseService
from .rate_limiter import SimpleRateLimiter

__all__ = ['BaseService', 'SimpleRateLimiter']
