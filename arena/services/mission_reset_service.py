"""
Mission reset service.

Daily missions reset at midnight UTC and weekly missions at Monday 00:00 UTC.
A reset replaces every player's rows for that cadence with fresh zeroed rows
from the active catalog. When Redis is configured, a SET NX lock keyed by the
reset period makes sure only one server instance performs each reset.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

import pytz

from arena.config import Config
from arena.database.models import MissionCadence
from arena.operations.progress_operations import ProgressOperations
from arena.utils.redis_utils import RedisUtils

logger = logging.getLogger(__name__)


def _utc(now: Optional[datetime]) -> datetime:
    now = now or datetime.now(pytz.utc)
    if now.tzinfo is None:
        return pytz.utc.localize(now)
    return now.astimezone(pytz.utc)


def next_reset(cadence: MissionCadence, now: Optional[datetime] = None) -> datetime:
    """Next reset instant (aware UTC) strictly after now"""
    now = _utc(now)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if cadence == MissionCadence.DAILY:
        return midnight + timedelta(days=1)
    days_until_monday = (7 - now.weekday()) % 7 or 7
    return midnight + timedelta(days=days_until_monday)


def time_until_reset(cadence: MissionCadence, now: Optional[datetime] = None) -> timedelta:
    now = _utc(now)
    return next_reset(cadence, now) - now


def period_key(cadence: MissionCadence, now: Optional[datetime] = None) -> str:
    """Identifier of the cadence window containing now, e.g. daily:2026-10-19 or weekly:2026-W43"""
    now = _utc(now)
    if cadence == MissionCadence.DAILY:
        return f"daily:{now.date().isoformat()}"
    year, week, _ = now.isocalendar()
    return f"weekly:{year}-W{week:02d}"


class MissionResetService:
    """Periodic mission catalog refresh."""

    def __init__(self, database, progress: Optional[ProgressOperations] = None, redis_client=None):
        self.db = database
        self.progress = progress or ProgressOperations(database)
        self.redis_client = redis_client
        self._redis_checked = redis_client is not None

    async def _get_redis_client(self):
        if not self._redis_checked:
            self.redis_client = await RedisUtils.create_redis_client()
            self._redis_checked = True
        return self.redis_client

    async def reset(self, cadence: MissionCadence, now: Optional[datetime] = None) -> Dict:
        """
        Reset one cadence for every player.

        Returns:
            Dict with the cadence, the period and how many players were reset;
            'skipped' is True when another instance holds this period's lock.
        """
        period = period_key(cadence, now)
        redis_client = await self._get_redis_client()
        if redis_client:
            lock_key = f"mission_reset_lock:{period}"
            if not await RedisUtils.acquire_lock(redis_client, lock_key, Config.CATALOG_LOCK_SECONDS):
                logger.info(f"Mission reset for {period} already handled by another instance")
                return {'cadence': cadence.value, 'period': period, 'players_reset': 0, 'skipped': True}
        else:
            logger.debug(f"Running mission reset for {period} without Redis locking")

        players_reset = await self.progress.reset_missions(cadence)
        logger.info(f"Mission reset {period}: {players_reset} players")
        return {'cadence': cadence.value, 'period': period, 'players_reset': players_reset, 'skipped': False}

    async def reset_daily_missions(self) -> Dict:
        return await self.reset(MissionCadence.DAILY)

    async def reset_weekly_missions(self) -> Dict:
        return await self.reset(MissionCadence.WEEKLY)

    async def run_periodically(self, stop_event: asyncio.Event):
        """Sleep until the next daily reset, reset, repeat until stop_event is set"""
        while not stop_event.is_set():
            delay = time_until_reset(MissionCadence.DAILY).total_seconds()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
                return
            except asyncio.TimeoutError:
                pass

            try:
                await self.reset_daily_missions()
                if datetime.now(pytz.utc).weekday() == 0:
                    await self.reset_weekly_missions()
            except Exception as e:
                # Keep the loop alive; the next window retries
                logger.error(f"Scheduled mission reset failed: {e}", exc_info=True)
