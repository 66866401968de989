"""
Matchmaking for wagered 1v1 matches.

The queue is an explicit object owned by a service instance (never a module
global), so tests and separate deployments can run independent queues.
Matching is greedy first-fit in join order: the first waiting entry with the
same stake and a power level within the tolerance band wins. Claiming that
entry and removing it from the queue happen under one lock, so two
concurrent joins can never both match the same waiting player.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Union

from arena.config import Config
from arena.constants import MatchmakingConstants
from arena.data_models.settlement import InfraError, Rejected, RejectionKind, WagerCreated
from arena.utils.arena_exceptions import PlayerNotFoundError
from arena.utils.economy import EconomyCalculator

logger = logging.getLogger(__name__)


class MatchmakingError(Exception):
    """Raised when the queue is used after shutdown"""
    pass


@dataclass
class QueueEntry:
    player_id: int
    stake: int
    power_level: int
    joined_at: float = 0.0


@dataclass(frozen=True)
class MatchmakingResult:
    """Outcome of a join: queued, or matched with an escrowed match"""
    status: str
    stake: int
    match_id: Optional[int] = None
    opponent_id: Optional[int] = None
    expired: List[int] = field(default_factory=list)
    insolvent: List[int] = field(default_factory=list)
    accepted: bool = field(default=True, init=False)


class MatchmakingQueue:
    """Lock-guarded FIFO of players waiting for an opponent."""

    def __init__(self, power_tolerance: Optional[float] = None,
                 timeout_seconds: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.power_tolerance = Config.POWER_TOLERANCE if power_tolerance is None else power_tolerance
        self.timeout_seconds = Config.MATCHMAKING_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        self._clock = clock
        self._entries: List[QueueEntry] = []
        self._lock = asyncio.Lock()
        self._closed = False

    def is_compatible(self, a: QueueEntry, b: QueueEntry) -> bool:
        """Same stake and power levels within +/- tolerance of the larger one"""
        if a.stake != b.stake:
            return False
        band = self.power_tolerance * max(a.power_level, b.power_level)
        return abs(a.power_level - b.power_level) <= band

    def _is_expired(self, entry: QueueEntry, now: float) -> bool:
        return now - entry.joined_at > self.timeout_seconds

    def size(self) -> int:
        return len(self._entries)

    async def contains(self, player_id: int) -> bool:
        async with self._lock:
            return any(entry.player_id == player_id for entry in self._entries)

    async def add(self, entry: QueueEntry):
        """Queue an entry, replacing any earlier entry of the same player"""
        async with self._lock:
            self._ensure_open()
            self._entries = [e for e in self._entries if e.player_id != entry.player_id]
            entry.joined_at = self._clock()
            self._entries.append(entry)

    async def remove(self, player_id: int) -> bool:
        async with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.player_id != player_id]
            return len(self._entries) != before

    def _claim_locked(self, requester: QueueEntry, now: float) -> Optional[QueueEntry]:
        for candidate in self._entries:
            if candidate.player_id == requester.player_id or self._is_expired(candidate, now):
                continue
            if self.is_compatible(requester, candidate):
                self._entries = [
                    e for e in self._entries
                    if e.player_id not in (candidate.player_id, requester.player_id)
                ]
                return candidate
        return None

    async def find_and_claim_match(self, requester: QueueEntry) -> Optional[QueueEntry]:
        """
        Remove and return the first compatible waiting entry, if any.

        The requester itself is removed too when matched; expired entries are
        skipped (they are reported by evict_expired).
        """
        async with self._lock:
            self._ensure_open()
            return self._claim_locked(requester, self._clock())

    async def match_or_enqueue(self, requester: QueueEntry) -> Optional[QueueEntry]:
        """Claim a compatible opponent, or queue the requester if there is none"""
        async with self._lock:
            self._ensure_open()
            now = self._clock()
            opponent = self._claim_locked(requester, now)
            if opponent is not None:
                return opponent

            self._entries = [e for e in self._entries if e.player_id != requester.player_id]
            requester.joined_at = now
            self._entries.append(requester)
            return None

    async def restore(self, entry: QueueEntry):
        """Put a claimed entry back at its original place in line (keeps joined_at)"""
        async with self._lock:
            self._ensure_open()
            if any(e.player_id == entry.player_id for e in self._entries):
                return
            self._entries.append(entry)
            self._entries.sort(key=lambda e: e.joined_at)

    async def evict_expired(self, now: Optional[float] = None) -> List[QueueEntry]:
        """Remove and return entries that waited longer than the timeout"""
        async with self._lock:
            now = self._clock() if now is None else now
            expired = [e for e in self._entries if self._is_expired(e, now)]
            if expired:
                self._entries = [e for e in self._entries if not self._is_expired(e, now)]
            return expired

    async def drain(self) -> List[QueueEntry]:
        """Empty the queue and refuse new entries (shutdown)"""
        async with self._lock:
            entries, self._entries = self._entries, []
            self._closed = True
            return entries

    def _ensure_open(self):
        if self._closed:
            raise MatchmakingError("Matchmaking queue has been shut down")


class MatchmakingService:
    """Pairs queued players and escrows their stakes through WagerOperations."""

    def __init__(self, database, wager_operations, queue: Optional[MatchmakingQueue] = None):
        self.db = database
        self.wagers = wager_operations
        self.queue = queue or MatchmakingQueue()

    async def join(self, player_id: int, stake: int) -> Union[MatchmakingResult, Rejected, InfraError]:
        """
        Join the queue with a stake.

        A claimed opponent who can no longer cover the stake is dropped from
        the queue and reported in ``insolvent``; the requester then tries the
        next compatible entry or waits. If the escrow fails for any other
        reason the opponent goes back to its original place in line.

        Returns:
            MatchmakingResult('matched') with the created match, ('queued') when
            waiting; Rejected if the stake is invalid or unaffordable, or the
            escrow failed.
        """
        if stake < MatchmakingConstants.MIN_STAKE:
            return Rejected(f"stake must be at least {MatchmakingConstants.MIN_STAKE}")

        player = await self.db.get_player(player_id)
        if player is None:
            return Rejected(PlayerNotFoundError(str(player_id)).user_message, RejectionKind.NOT_FOUND)
        if player.coins < stake:
            return Rejected("insufficient coins for stake", RejectionKind.INSUFFICIENT_FUNDS,
                            player_id=player_id)

        expired = [entry.player_id for entry in await self.queue.evict_expired()]
        if expired:
            logger.info(f"Matchmaking entries expired: {expired}")

        entry = QueueEntry(
            player_id=player_id,
            stake=stake,
            power_level=EconomyCalculator.calculate_power_level(player.get_upgrade_levels()),
        )
        insolvent = []
        while True:
            opponent = await self.queue.match_or_enqueue(entry)
            if opponent is None:
                logger.debug(f"Player {player_id} queued with stake {stake} (power {entry.power_level})")
                return MatchmakingResult(status='queued', stake=stake, expired=expired,
                                         insolvent=insolvent)

            outcome = await self.wagers.create_match(opponent.player_id, player_id, stake)
            if isinstance(outcome, WagerCreated):
                break

            if (isinstance(outcome, Rejected) and outcome.kind == RejectionKind.INSUFFICIENT_FUNDS
                    and outcome.player_id == opponent.player_id):
                logger.info(f"Dropped player {opponent.player_id} from the queue: cannot cover stake {stake}")
                insolvent.append(opponent.player_id)
                continue

            logger.warning(f"Escrow failed for {opponent.player_id} vs {player_id}: {outcome}")
            await self.queue.restore(opponent)
            return outcome

        logger.info(f"Matched players {opponent.player_id} and {player_id} into match {outcome.match_id}")
        return MatchmakingResult(status='matched', stake=stake, match_id=outcome.match_id,
                                 opponent_id=opponent.player_id, expired=expired,
                                 insolvent=insolvent)

    async def leave(self, player_id: int) -> bool:
        return await self.queue.remove(player_id)

    async def shutdown(self) -> List[int]:
        """Drain the queue; returns the player ids that were still waiting"""
        return [entry.player_id for entry in await self.queue.drain()]
