"""
Leaderboard service.

Best-score leaderboards over daily, weekly and all-time windows plus per-player
statistics, with a small TTL cache invalidated whenever a run settles.
"""

from datetime import datetime, timedelta
from typing import Optional
import asyncio
import time
import logging

import pytz
from sqlalchemy import select, func

from arena.services.base import BaseService
from arena.data_models.leaderboard import (
    LeaderboardEntry, LeaderboardPage, PlayerStats, RunSummary
)
from arena.database.models import GameSession, GameType, Player, SessionStatus
from arena.utils.arena_exceptions import PlayerNotFoundError
from arena.utils.economy import EconomyCalculator

logger = logging.getLogger(__name__)

LEADERBOARD_PERIODS = ('daily', 'weekly', 'alltime')


def window_start(period: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Start of a leaderboard window as a naive UTC datetime.

    daily starts at midnight UTC, weekly at Monday 00:00 UTC, alltime has no start.
    """
    if period not in LEADERBOARD_PERIODS:
        raise ValueError(f"period must be one of {', '.join(LEADERBOARD_PERIODS)}")
    if period == 'alltime':
        return None

    now = now or datetime.now(pytz.utc)
    if now.tzinfo is None:
        now = pytz.utc.localize(now)
    midnight = now.astimezone(pytz.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    if period == 'weekly':
        midnight -= timedelta(days=midnight.weekday())
    return midnight.replace(tzinfo=None)


class LeaderboardService(BaseService):
    """Service for leaderboard queries with caching."""

    def __init__(self, session_factory, cache_ttl: int = 60):
        super().__init__(session_factory)
        # TTL cache for leaderboard pages
        self._cache = {}
        self._cache_timestamps = {}
        self._cache_ttl = cache_ttl
        self._cache_lock = asyncio.Lock()

    async def _get_cached(self, key: str):
        async with self._cache_lock:
            timestamp = self._cache_timestamps.get(key)
            if timestamp is None or time.time() - timestamp >= self._cache_ttl:
                return None
            return self._cache[key]

    async def invalidate_cache(self):
        """Drop every cached page (called after a run settles)."""
        async with self._cache_lock:
            self._cache.clear()
            self._cache_timestamps.clear()

    async def get_leaderboard(self, period: str = 'alltime', limit: int = 10) -> LeaderboardPage:
        """Best finished solo score per player within the period, highest first."""
        if not isinstance(limit, int) or limit < 1 or limit > 100:
            raise ValueError("limit must be between 1 and 100")
        start = window_start(period)

        cache_key = f"leaderboard:{period}:{limit}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return cached

        async def fetch_page():
            async with self.get_session() as session:
                return await self._query_page(session, start, limit)

        entries, total_players = await self.execute_with_retry(fetch_page)

        page = LeaderboardPage(period=period, entries=entries, total_players=total_players or 0,
                               window_start=start)
        async with self._cache_lock:
            self._cache[cache_key] = page
            self._cache_timestamps[cache_key] = time.time()
        return page

    async def _query_page(self, session, start: Optional[datetime], limit: int):
        best = (
            select(
                GameSession.player_id.label('player_id'),
                func.max(GameSession.final_score).label('best_score'),
                func.count(GameSession.id).label('runs'),
            )
            .where(
                GameSession.status == SessionStatus.FINISHED,
                GameSession.game_type == GameType.SOLO,
            )
            .group_by(GameSession.player_id)
        )
        if start is not None:
            best = best.where(GameSession.finished_at >= start)
        best = best.subquery()

        total_players = await session.scalar(select(func.count()).select_from(best))
        result = await session.execute(
            select(Player, best.c.best_score, best.c.runs)
            .join(best, best.c.player_id == Player.id)
            .order_by(best.c.best_score.desc(), Player.id.asc())
            .limit(limit)
        )

        entries = [
            LeaderboardEntry(
                rank=rank,
                player_id=player.id,
                username=player.username,
                best_score=best_score or 0,
                runs=runs,
                games_played=player.games_played,
                win_rate=round(player.win_rate, 1),
                current_skin=player.current_skin,
            )
            for rank, (player, best_score, runs) in enumerate(result.all(), start=1)
        ]
        return entries, total_players

    async def get_player_stats(self, player_id: int, recent: int = 10) -> PlayerStats:
        """Lifetime stats and the player's most recent finished runs."""
        async with self.get_session() as session:
            player = await session.get(Player, player_id)
            if player is None:
                raise PlayerNotFoundError(str(player_id))

            result = await session.execute(
                select(GameSession)
                .where(
                    GameSession.player_id == player_id,
                    GameSession.status == SessionStatus.FINISHED,
                )
                .order_by(GameSession.finished_at.desc(), GameSession.id.desc())
                .limit(recent)
            )
            runs = [
                RunSummary(
                    session_id=run.id,
                    final_score=run.final_score or 0,
                    coins_collected=run.coins_collected or 0,
                    distance_traveled=run.distance_traveled or 0.0,
                    time_taken=run.time_taken or 0.0,
                    did_finish=bool(run.did_finish),
                    reward_coins=run.reward_coins or 0,
                    finished_at=run.finished_at,
                )
                for run in result.scalars().all()
            ]

            return PlayerStats(
                player_id=player.id,
                username=player.username,
                games_played=player.games_played,
                games_won=player.games_won,
                win_rate=round(player.win_rate, 1),
                total_distance=player.total_distance,
                total_coins_collected=player.total_coins_collected,
                best_score=player.best_score,
                highest_army=player.highest_army,
                power_level=EconomyCalculator.calculate_power_level(player.get_upgrade_levels()),
                recent_runs=runs,
            )
