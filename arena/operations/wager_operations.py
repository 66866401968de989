"""
Wager Operations Module

Escrowed 1v1 matches: both stakes are debited when the match is created and
the pot is paid out once when it settles.

Key functionality:
- create_match(): atomic escrow of both stakes (all or nothing)
- submit_result(): record one player's run; settles when both are in
- settle_match(): pay the pot minus the house fee, exactly once
- cancel_match(): refund both stakes of a pending match

Conservation: for every match, stakes debited == payouts credited + house fee
(or == refunds for a cancelled match). Violations raise LedgerInvariantError.
"""

from dataclasses import asdict
from decimal import Decimal, ROUND_FLOOR
from typing import Dict, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from arena.config import Config
from arena.constants import MatchmakingConstants
from arena.data_models.game import GameOutcome, SessionSnapshot
from arena.data_models.settlement import (
    InfraError, Rejected, RejectionKind, SettlementMessage, WagerCancelled,
    WagerCreated, WagerOutcome, WagerResultRecorded, WagerSettled
)
from arena.database.models import (
    Currency, LedgerCategory, WagerMatch, WagerStatus, utc_now
)
from arena.operations.settlement_operations import generate_track_seed
from arena.utils.anticheat import ResultValidator
from arena.utils.arena_exceptions import (
    InsufficientFundsError, LedgerInvariantError, PlayerNotFoundError
)
from arena.utils.economy import EconomyCalculator
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


def split_pot(pot: int, house_fee_rate: float) -> Tuple[int, int]:
    """
    Split a pot into the winner's payout and the retained house fee.

    payout = floor(pot * (1 - fee_rate)); fee = pot - payout, so the two
    always add back up to the pot.
    """
    keep = 1 - Decimal(str(house_fee_rate))
    payout = int((Decimal(pot) * keep).to_integral_value(rounding=ROUND_FLOOR))
    return payout, pot - payout


def ranking_key(outcome: GameOutcome) -> tuple:
    """Finished beats unfinished, then higher score, lower time, longer distance"""
    return (
        outcome.did_finish,
        EconomyCalculator.resolve_score(outcome),
        -outcome.time_taken,
        outcome.distance_traveled,
    )


class WagerOperations:
    """Business logic for wagered matches."""

    def __init__(self, database, validator: Optional[ResultValidator] = None,
                 house_fee_rate: Optional[float] = None):
        self.db = database
        self.validator = validator or ResultValidator()
        self.house_fee_rate = Config.HOUSE_FEE_RATE if house_fee_rate is None else house_fee_rate
        self.logger = logger

    async def _lock_match(self, session: AsyncSession, match_id: int) -> Optional[WagerMatch]:
        """Lock a match row for the rest of the transaction (see Database.lock_player)"""
        result = await session.execute(
            update(WagerMatch)
            .where(WagerMatch.id == match_id)
            .values(status=WagerMatch.status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        match_result = await session.execute(
            select(WagerMatch)
            .where(WagerMatch.id == match_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return match_result.scalar_one()

    async def get_match(self, match_id: int) -> Optional[WagerMatch]:
        async with self.db.get_session() as session:
            return await session.get(WagerMatch, match_id)

    async def create_match(self, player_a_id: int, player_b_id: int, stake: int,
                           track_seed: Optional[str] = None) -> WagerOutcome:
        """
        Create a match and escrow both stakes under one transaction.

        Both balances are re-checked while their rows are locked; if either
        player cannot cover the stake the whole transaction rolls back and
        nobody is debited.
        """
        if stake < MatchmakingConstants.MIN_STAKE:
            return Rejected(f"stake must be at least {MatchmakingConstants.MIN_STAKE}")
        if player_a_id == player_b_id:
            return Rejected("cannot match a player against themselves")

        try:
            async with self.db.transaction() as session:
                # Lock in id order so concurrent escrows cannot deadlock
                players = {}
                for player_id in sorted((player_a_id, player_b_id)):
                    players[player_id] = await self.db.lock_player(session, player_id)

                match = WagerMatch(
                    player_a_id=player_a_id,
                    player_b_id=player_b_id,
                    stake=stake,
                    house_fee_rate=self.house_fee_rate,
                    status=WagerStatus.PENDING,
                    track_seed=track_seed or generate_track_seed(player_a_id),
                    snapshot_a=players[player_a_id].get_upgrade_levels(),
                    snapshot_b=players[player_b_id].get_upgrade_levels(),
                    created_at=utc_now()
                )
                session.add(match)
                await session.flush()

                for player_id in sorted(players):
                    await self.db.add_ledger_entry_atomic(
                        player_id, Currency.COINS, -stake, LedgerCategory.WAGER_STAKE,
                        f"Stake for match {match.id}", session, related_match_id=match.id
                    )
                match_id = match.id

            self.logger.info(
                f"Created match {match_id}: players {player_a_id} vs {player_b_id}, stake {stake}"
            )
            return WagerCreated(match_id=match_id, stake=stake, player_ids=[player_a_id, player_b_id])

        except InsufficientFundsError as e:
            self.logger.info(f"Match escrow aborted for {player_a_id} vs {player_b_id}: {e}")
            return Rejected(f"player {e.player_id} has insufficient coins for stake",
                            RejectionKind.INSUFFICIENT_FUNDS, player_id=e.player_id)
        except PlayerNotFoundError as e:
            return Rejected(e.user_message, RejectionKind.NOT_FOUND)
        except SQLAlchemyError as e:
            self.logger.error(f"Match creation failed: {e}", exc_info=True)
            return InfraError(f"Match creation aborted: {e.__class__.__name__}")

    def determine_winner(self, match: WagerMatch) -> Optional[int]:
        """
        Pick the winner from both recorded results.

        A result that fails anti-cheat against its player's snapshot forfeits.
        Returns None for a draw (identical ranking, or both forfeit).
        """
        entries = []
        for player_id, result, snapshot in (
            (match.player_a_id, match.result_a, match.snapshot_a),
            (match.player_b_id, match.result_b, match.snapshot_b),
        ):
            outcome = GameOutcome(**result)
            verdict = self.validator.validate(
                outcome, SessionSnapshot(upgrade_levels=dict(snapshot or {}), track_seed=match.track_seed)
            )
            if not verdict.valid:
                self.logger.warning(f"Match {match.id}: player {player_id} forfeits ({verdict.reason})")
            entries.append((player_id, outcome, verdict.valid))

        (a_id, a_outcome, a_valid), (b_id, b_outcome, b_valid) = entries
        if a_valid != b_valid:
            return a_id if a_valid else b_id
        if not a_valid:
            return None

        a_key, b_key = ranking_key(a_outcome), ranking_key(b_outcome)
        if a_key == b_key:
            return None
        return a_id if a_key > b_key else b_id

    async def _settle_locked(self, session: AsyncSession, match: WagerMatch,
                             winner_id: Optional[int]) -> WagerSettled:
        """Pay out a locked pending match inside the caller's transaction"""
        pot = match.pot
        if winner_id is None:
            each, _ = split_pot(match.stake, match.house_fee_rate)
            payouts = {match.player_a_id: each, match.player_b_id: each}
        else:
            payout, _ = split_pot(pot, match.house_fee_rate)
            payouts = {winner_id: payout}
        house_fee = pot - sum(payouts.values())

        if house_fee < 0 or sum(payouts.values()) + house_fee != pot:
            raise LedgerInvariantError(f"Match {match.id} payouts {payouts} do not conserve pot {pot}")

        for player_id in sorted((match.player_a_id, match.player_b_id)):
            player = await self.db.lock_player(session, player_id)
            player.games_played += 1
            if player_id == winner_id:
                player.games_won += 1

            amount = payouts.get(player_id, 0)
            if amount > 0:
                await self.db.add_ledger_entry_atomic(
                    player_id, Currency.COINS, amount, LedgerCategory.WAGER_PAYOUT,
                    f"{'Draw share' if winner_id is None else 'Winnings'} for match {match.id}",
                    session, related_match_id=match.id
                )

        match.status = WagerStatus.SETTLED
        match.winner_id = winner_id
        match.payout = payouts.get(winner_id, 0) if winner_id is not None else sum(payouts.values())
        match.house_fee = house_fee
        match.settlement_note = "draw" if winner_id is None else None
        match.settled_at = utc_now()
        await session.flush()

        self.logger.info(
            f"Settled match {match.id}: winner {winner_id if winner_id is not None else 'none (draw)'}, "
            f"payouts {payouts}, house fee {house_fee}"
        )
        return WagerSettled(match_id=match.id, winner_id=winner_id, payouts=payouts, house_fee=house_fee)

    def _check_pending(self, match: Optional[WagerMatch]) -> Optional[Rejected]:
        if match is None:
            return Rejected(SettlementMessage.MATCH_NOT_FOUND, RejectionKind.NOT_FOUND)
        if match.status == WagerStatus.SETTLED:
            return Rejected(SettlementMessage.MATCH_ALREADY_SETTLED, RejectionKind.CONFLICT)
        if match.status != WagerStatus.PENDING:
            return Rejected(SettlementMessage.MATCH_NOT_PENDING, RejectionKind.CONFLICT)
        return None

    async def settle_match(self, match_id: int, winner_id: Optional[int] = None) -> WagerOutcome:
        """
        Settle a pending match once.

        Args:
            match_id: Match to settle
            winner_id: Explicit winner; when omitted both results must be
                recorded and the winner is derived from them

        Returns:
            WagerSettled, or Rejected if the match is missing, not pending,
            already settled, or lacks results
        """
        try:
            async with self.db.transaction() as session:
                match = await self._lock_match(session, match_id)
                rejection = self._check_pending(match)
                if rejection:
                    return rejection

                if winner_id is not None and not match.has_player(winner_id):
                    return Rejected(SettlementMessage.NOT_A_PARTICIPANT, RejectionKind.VALIDATION)
                if winner_id is None:
                    if match.result_a is None or match.result_b is None:
                        return Rejected(SettlementMessage.RESULTS_INCOMPLETE, RejectionKind.CONFLICT)
                    winner_id = self.determine_winner(match)

                return await self._settle_locked(session, match, winner_id)

        except SQLAlchemyError as e:
            self.logger.error(f"Settlement of match {match_id} failed: {e}", exc_info=True)
            return InfraError(f"Match settlement aborted: {e.__class__.__name__}")

    async def submit_result(self, match_id: int, player_id: int, outcome: GameOutcome) -> WagerOutcome:
        """
        Record one player's result; the second result settles the match in
        the same transaction.
        """
        try:
            async with self.db.transaction() as session:
                match = await self._lock_match(session, match_id)
                rejection = self._check_pending(match)
                if rejection:
                    return rejection
                if not match.has_player(player_id):
                    return Rejected(SettlementMessage.NOT_A_PARTICIPANT, RejectionKind.FORBIDDEN)

                field_name = 'result_a' if player_id == match.player_a_id else 'result_b'
                if getattr(match, field_name) is not None:
                    return Rejected(SettlementMessage.RESULT_ALREADY_SUBMITTED, RejectionKind.CONFLICT)
                setattr(match, field_name, asdict(outcome))
                await session.flush()

                if match.result_a is not None and match.result_b is not None:
                    return await self._settle_locked(session, match, self.determine_winner(match))

            return WagerResultRecorded(match_id=match_id, player_id=player_id, awaiting=1)

        except SQLAlchemyError as e:
            self.logger.error(f"Recording result for match {match_id} failed: {e}", exc_info=True)
            return InfraError(f"Match result aborted: {e.__class__.__name__}")

    async def cancel_match(self, match_id: int, reason: str = "cancelled") -> WagerOutcome:
        """Refund both stakes of a pending match"""
        try:
            async with self.db.transaction() as session:
                match = await self._lock_match(session, match_id)
                rejection = self._check_pending(match)
                if rejection:
                    return rejection

                refunds: Dict[int, int] = {}
                for player_id in sorted((match.player_a_id, match.player_b_id)):
                    await self.db.add_ledger_entry_atomic(
                        player_id, Currency.COINS, match.stake, LedgerCategory.WAGER_REFUND,
                        f"Refund for match {match.id}", session, related_match_id=match.id
                    )
                    refunds[player_id] = match.stake

                match.status = WagerStatus.CANCELLED
                match.house_fee = 0
                match.settlement_note = reason
                match.settled_at = utc_now()

            self.logger.info(f"Cancelled match {match_id} ({reason}), refunded {refunds}")
            return WagerCancelled(match_id=match_id, refunds=refunds)

        except SQLAlchemyError as e:
            self.logger.error(f"Cancelling match {match_id} failed: {e}", exc_info=True)
            return InfraError(f"Match cancellation aborted: {e.__class__.__name__}")
