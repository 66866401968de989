"""
Settlement Operations Module

Run lifecycle: starting a run with a frozen snapshot, and settling its
submitted outcome.

Key functionality:
- start_run(): create an in-progress session with the track and upgrade snapshot
- settle(): validate an outcome and, under one transaction, finish the
  session, pay the reward, update stats, write the ledger and advance progress
- record_event(): capability-gated gameplay events on an in-progress run

Session status only ever moves out of in_progress through a guarded
UPDATE ... WHERE status = 'in_progress', so a session settles at most once
even when duplicate submissions race.
"""

import random
import string
import time
from typing import Optional, Set

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from arena.config import Config
from arena.constants import AntiCheatConstants, Capability, UpgradeType
from arena.data_models.game import GameOutcome
from arena.data_models.settlement import (
    Balance, EventOutcome, EventRecorded, InfraError, Rejected, RejectionKind,
    SettlementAccepted, SettlementMessage, SettlementOutcome
)
from arena.database.models import (
    Currency, GameSession, GameType, LedgerCategory, SessionStatus, utc_now
)
from arena.operations.progress_operations import ProgressOperations
from arena.utils.anticheat import ResultValidator
from arena.utils.arena_exceptions import LedgerInvariantError
from arena.utils.economy import EconomyCalculator
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


def generate_track_seed(player_id: int, rng: Optional[random.Random] = None) -> str:
    """Seed format: <epoch ms>-<player id>-<7 random base36 chars>"""
    rng = rng or random
    suffix = ''.join(rng.choices(string.ascii_lowercase + string.digits, k=7))
    return f"{int(time.time() * 1000)}-{player_id}-{suffix}"


class SettlementOperations:
    """
    Business logic for game runs and their settlement.

    The validator, progress collaborator and capability set are injected so
    tests can swap them; defaults come from Config.
    """

    def __init__(self, database, progress: Optional[ProgressOperations] = None,
                 validator: Optional[ResultValidator] = None,
                 capabilities: Optional[Set[str]] = None,
                 income_rate: Optional[float] = None):
        self.db = database
        self.progress = progress or ProgressOperations(database)
        self.validator = validator or ResultValidator()
        self.capabilities = Config.get_enabled_capabilities() if capabilities is None else set(capabilities)
        self.income_rate = Config.INCOME_RATE if income_rate is None else income_rate
        self.logger = logger

    async def start_run(self, player_id: int, game_type: GameType = GameType.SOLO,
                        track_seed: Optional[str] = None) -> GameSession:
        """
        Create an in-progress session.

        The player's current upgrade levels are copied into the session; the
        anti-cheat bounds of this run use that copy even if the player
        upgrades before finishing.

        Raises:
            PlayerNotFoundError: If the player does not exist
        """
        async with self.db.transaction() as session:
            player = await self.db.lock_player(session, player_id)

            game = GameSession(
                player_id=player_id,
                game_type=game_type,
                track_seed=track_seed or generate_track_seed(player_id),
                difficulty=EconomyCalculator.calculate_difficulty(player.games_played),
                track_length=AntiCheatConstants.TRACK_LENGTH,
                base_speed=AntiCheatConstants.PLAYER_BASE_SPEED,
                max_speed_multiplier=AntiCheatConstants.MAX_SPEED_MULTIPLIER,
                upgrade_snapshot=player.get_upgrade_levels(),
                status=SessionStatus.IN_PROGRESS,
                started_at=utc_now()
            )
            session.add(game)
            await session.flush()

        self.logger.info(f"Started run {game.id} for player {player_id} (seed {game.track_seed})")
        return game

    async def get_run(self, session_id: int) -> Optional[GameSession]:
        async with self.db.get_session() as session:
            return await session.get(GameSession, session_id)

    async def _transition(self, session: AsyncSession, session_id: int,
                          new_status: SessionStatus, **values) -> bool:
        """Move a session out of in_progress; False if another caller got there first"""
        result = await session.execute(
            update(GameSession)
            .where(
                GameSession.id == session_id,
                GameSession.status == SessionStatus.IN_PROGRESS
            )
            .values(status=new_status, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def settle(self, session_id: int, outcome: GameOutcome,
                     player_id: Optional[int] = None) -> SettlementOutcome:
        """
        Settle a submitted run.

        Args:
            session_id: Run being settled
            outcome: Client-submitted result
            player_id: Caller's player id; when given it must own the session

        Returns:
            SettlementAccepted with the reward and new balances,
            Rejected(reason) for anti-cheat and state conflicts (no balance,
            stat or ledger change), or InfraError when the database aborted
            the unit of work (the session stays in_progress and may be retried).

        Raises:
            LedgerInvariantError: balance bookkeeping contradicted itself
        """
        try:
            async with self.db.transaction() as session:
                game = await session.get(GameSession, session_id)
                if game is None:
                    return Rejected(SettlementMessage.SESSION_NOT_FOUND, RejectionKind.NOT_FOUND)
                if player_id is not None and game.player_id != player_id:
                    return Rejected(SettlementMessage.WRONG_PLAYER, RejectionKind.FORBIDDEN)
                if game.status == SessionStatus.FINISHED:
                    return Rejected(SettlementMessage.ALREADY_SETTLED, RejectionKind.CONFLICT)
                if game.status != SessionStatus.IN_PROGRESS:
                    return Rejected(SettlementMessage.NOT_IN_PROGRESS, RejectionKind.CONFLICT)

                verdict = self.validator.validate(outcome, game.snapshot())
                now = utc_now()

                if not verdict.valid:
                    if not await self._transition(session, session_id, SessionStatus.CANCELLED,
                                                  rejection_reason=verdict.reason, finished_at=now):
                        return Rejected(SettlementMessage.NOT_IN_PROGRESS, RejectionKind.CONFLICT)
                    self.logger.warning(
                        f"Rejected run {session_id} for player {game.player_id}: {verdict.reason}"
                    )
                    return Rejected(verdict.reason, RejectionKind.VALIDATION)

                score = EconomyCalculator.resolve_score(outcome)
                if not await self._transition(
                    session, session_id, SessionStatus.FINISHED,
                    final_score=score,
                    coins_collected=int(outcome.coins_collected),
                    max_army=int(outcome.max_army),
                    distance_traveled=outcome.distance_traveled,
                    time_taken=outcome.time_taken,
                    did_finish=outcome.did_finish,
                    enemies_killed=int(outcome.enemies_killed),
                    perfect_gates=int(outcome.perfect_gates),
                    finished_at=now
                ):
                    return Rejected(SettlementMessage.NOT_IN_PROGRESS, RejectionKind.CONFLICT)

                player = await self.db.lock_player(session, game.player_id)

                # Live income level: upgrades bought mid-run count toward the reward
                reward = EconomyCalculator.calculate_game_reward(
                    outcome, player.get_upgrade_level(UpgradeType.INCOME), self.income_rate
                )

                player.games_played += 1
                if outcome.did_finish:
                    player.games_won += 1
                player.total_distance += outcome.distance_traveled
                player.total_coins_collected += int(outcome.coins_collected)
                player.best_score = max(player.best_score, score)
                player.highest_army = max(player.highest_army, int(outcome.max_army))

                await session.execute(
                    update(GameSession)
                    .where(GameSession.id == session_id)
                    .values(reward_coins=reward)
                    .execution_options(synchronize_session=False)
                )

                if reward > 0:
                    await self.db.add_ledger_entry_atomic(
                        player.id, Currency.COINS, reward, LedgerCategory.GAME_REWARD,
                        f"Run reward: {outcome.distance_traveled:.0f}m, {int(outcome.coins_collected)} coins",
                        session, related_session_id=session_id
                    )

                completed, unlocked = await self.progress.advance_after_run(session, player, outcome)

                if player.coins < 0 or player.gems < 0:
                    raise LedgerInvariantError(
                        f"Player {player.id} balance went negative during settlement of run {session_id}"
                    )

                balance = Balance(coins=player.coins, gems=player.gems)
                stats = {
                    'games_played': player.games_played,
                    'games_won': player.games_won,
                    'total_distance': player.total_distance,
                    'total_coins_collected': player.total_coins_collected,
                    'best_score': player.best_score,
                    'highest_army': player.highest_army,
                }
                owner_id = player.id

            self.logger.info(f"Settled run {session_id} for player {owner_id}: +{reward} coins")
            return SettlementAccepted(
                session_id=session_id,
                reward_coins=reward,
                balance=balance,
                stats=stats,
                unlocked_achievements=unlocked,
                completed_missions=completed
            )

        except SQLAlchemyError as e:
            self.logger.error(f"Settlement of run {session_id} aborted: {e}", exc_info=True)
            return InfraError(f"Settlement aborted: {e.__class__.__name__}")

    async def record_event(self, session_id: int, player_id: int,
                           capability: Capability, payload: Optional[dict] = None) -> EventOutcome:
        """
        Store a capability-gated gameplay event on an in-progress run.

        Disabled capabilities are rejected explicitly; nothing pretends the
        effect happened.
        """
        capability = Capability(capability)
        if capability.value not in self.capabilities:
            return Rejected(f"capability disabled: {capability.value}", RejectionKind.FORBIDDEN)

        try:
            async with self.db.transaction() as session:
                game = await session.get(GameSession, session_id, with_for_update=True)
                if game is None:
                    return Rejected(SettlementMessage.SESSION_NOT_FOUND, RejectionKind.NOT_FOUND)
                if game.player_id != player_id:
                    return Rejected(SettlementMessage.WRONG_PLAYER, RejectionKind.FORBIDDEN)
                if game.status != SessionStatus.IN_PROGRESS:
                    return Rejected(SettlementMessage.NOT_IN_PROGRESS, RejectionKind.CONFLICT)

                # Reassign so the JSON column is marked dirty
                game.events = list(game.events or []) + [
                    {'type': capability.value, 'payload': payload or {}, 'at': utc_now().isoformat()}
                ]
                event_count = len(game.events)

            return EventRecorded(session_id=session_id, capability=capability.value, event_count=event_count)

        except SQLAlchemyError as e:
            self.logger.error(f"Recording {capability.value} on run {session_id} failed: {e}", exc_info=True)
            return InfraError(f"Event aborted: {e.__class__.__name__}")

    async def collect_gate(self, session_id: int, player_id: int, gate: Optional[dict] = None) -> EventOutcome:
        return await self.record_event(session_id, player_id, Capability.COLLECT_GATE, gate)

    async def damage_army(self, session_id: int, player_id: int, amount: int = 1) -> EventOutcome:
        return await self.record_event(session_id, player_id, Capability.DAMAGE_ARMY, {'amount': amount})
