"""
Run settlement tests: the accept path, rejections, idempotency under
replay and concurrency, infrastructure failures and ledger reconstruction.
"""

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from arena.data_models.settlement import (
    EventRecorded, InfraError, Rejected, RejectionKind, SettlementAccepted, SettlementMessage
)
from arena.database.models import Currency, LedgerCategory, SessionStatus
from arena.operations.player_operations import PlayerOperations
from arena.operations.settlement_operations import SettlementOperations, generate_track_seed
from arena.utils.anticheat import RejectionReason
from arena.utils.arena_exceptions import LedgerInvariantError
from arena_helpers import ledger_count, make_database, make_player, normal_outcome


def test_normal_run_is_accepted(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1")
            settlement = SettlementOperations(db, capabilities=set())
            game = await settlement.start_run(player.id)
            assert game.status == SessionStatus.IN_PROGRESS
            assert game.upgrade_snapshot['capacity'] == 0

            result = await settlement.settle(game.id, normal_outcome(), player.id)
            assert isinstance(result, SettlementAccepted)
            assert result.reward_coins == 600
            assert result.balance.coins == 600
            assert result.stats['games_played'] == 1
            assert result.stats['games_won'] == 1
            assert result.stats['best_score'] == 9050

            run = await settlement.get_run(game.id)
            assert run.status == SessionStatus.FINISHED
            assert run.reward_coins == 600

            ledger = await db.get_ledger(player.id)
            assert len(ledger) == 1
            assert ledger[0].category == LedgerCategory.GAME_REWARD
            assert (ledger[0].balance_before, ledger[0].amount, ledger[0].balance_after) == (0, 600, 600)
            assert ledger[0].related_session_id == game.id
        finally:
            await db.close()

    asyncio.run(scenario())


def test_rejected_run_changes_nothing(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1")
            settlement = SettlementOperations(db, capabilities=set())
            game = await settlement.start_run(player.id)

            result = await settlement.settle(game.id, normal_outcome(time_taken=2), player.id)
            assert isinstance(result, Rejected)
            assert result.reason == RejectionReason.IMPOSSIBLE_TIME
            assert result.kind == RejectionKind.VALIDATION

            run = await settlement.get_run(game.id)
            assert run.status == SessionStatus.CANCELLED
            assert run.rejection_reason == RejectionReason.IMPOSSIBLE_TIME

            refreshed = await db.get_player(player.id)
            assert (refreshed.coins, refreshed.games_played) == (0, 0)
            assert await ledger_count(db, player.id) == 0

            # A rejected session cannot be resubmitted with a clean result
            retry = await settlement.settle(game.id, normal_outcome(), player.id)
            assert retry.reason == SettlementMessage.NOT_IN_PROGRESS
        finally:
            await db.close()

    asyncio.run(scenario())


def test_sequential_replay_is_rejected(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1")
            settlement = SettlementOperations(db, capabilities=set())
            game = await settlement.start_run(player.id)

            first = await settlement.settle(game.id, normal_outcome(), player.id)
            second = await settlement.settle(game.id, normal_outcome(), player.id)
            assert first.accepted
            assert isinstance(second, Rejected)
            assert second.reason == SettlementMessage.ALREADY_SETTLED
            assert second.kind == RejectionKind.CONFLICT

            refreshed = await db.get_player(player.id)
            assert refreshed.coins == 600
            assert refreshed.games_played == 1
            assert await ledger_count(db, player.id) == 1
        finally:
            await db.close()

    asyncio.run(scenario())


def test_concurrent_duplicates_settle_once(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1")
            settlement = SettlementOperations(db, capabilities=set())
            game = await settlement.start_run(player.id)

            results = await asyncio.gather(*[
                settlement.settle(game.id, normal_outcome(), player.id) for _ in range(3)
            ])
            accepted = [r for r in results if isinstance(r, SettlementAccepted)]
            assert len(accepted) == 1
            assert all(not r.accepted for r in results if r is not accepted[0])

            refreshed = await db.get_player(player.id)
            assert refreshed.coins == 600
            assert refreshed.games_played == 1
            assert await ledger_count(db, player.id) == 1
        finally:
            await db.close()

    asyncio.run(scenario())


def test_unknown_session_and_wrong_player(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            owner = await make_player(db, "owner")
            other = await make_player(db, "other")
            settlement = SettlementOperations(db, capabilities=set())
            game = await settlement.start_run(owner.id)

            missing = await settlement.settle(9999, normal_outcome())
            assert missing.reason == SettlementMessage.SESSION_NOT_FOUND
            assert missing.kind == RejectionKind.NOT_FOUND

            stolen = await settlement.settle(game.id, normal_outcome(), other.id)
            assert stolen.kind == RejectionKind.FORBIDDEN
            assert (await settlement.get_run(game.id)).status == SessionStatus.IN_PROGRESS
        finally:
            await db.close()

    asyncio.run(scenario())


def test_snapshot_bounds_ignore_mid_run_upgrades(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1", coins=1000)
            settlement = SettlementOperations(db, capabilities=set())
            players = PlayerOperations(db)

            game = await settlement.start_run(player.id)
            purchase = await players.purchase_upgrade(player.id, "capacity")
            assert purchase.accepted

            # Capacity level 1 allows 32 now, but this run started at level 0
            result = await settlement.settle(game.id, normal_outcome(max_army=31), player.id)
            assert result.reason == RejectionReason.ARMY_EXCEEDED

            next_game = await settlement.start_run(player.id)
            assert next_game.upgrade_snapshot['capacity'] == 1
            assert (await settlement.settle(next_game.id, normal_outcome(max_army=31), player.id)).accepted
        finally:
            await db.close()

    asyncio.run(scenario())


@pytest.mark.parametrize("overrides, reason", [
    ({'final_score': 1e20}, RejectionReason.SCORE_EXCEEDED),
    ({'enemies_killed': 10**12}, RejectionReason.TOO_MANY_KILLS),
    ({'perfect_gates': 1e20}, RejectionReason.TOO_MANY_GATES),
])
def test_oversized_counters_are_rejected_not_raised(database_url, overrides, reason):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1")
            settlement = SettlementOperations(db, capabilities=set())
            game = await settlement.start_run(player.id)

            result = await settlement.settle(game.id, normal_outcome(**overrides), player.id)
            assert isinstance(result, Rejected)
            assert result.reason == reason
            assert result.kind == RejectionKind.VALIDATION

            run = await settlement.get_run(game.id)
            assert run.status == SessionStatus.CANCELLED
            refreshed = await db.get_player(player.id)
            assert (refreshed.coins, refreshed.games_played) == (0, 0)
            assert await ledger_count(db, player.id) == 0
        finally:
            await db.close()

    asyncio.run(scenario())


def test_kill_bonus_is_bounded_by_track(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1")
            settlement = SettlementOperations(db, capabilities=set())
            game = await settlement.start_run(player.id)

            # 400 kills is the most an 800 m track can spawn: 600 + 400 * 5
            result = await settlement.settle(game.id, normal_outcome(enemies_killed=400), player.id)
            assert isinstance(result, SettlementAccepted)
            assert result.reward_coins == 2600
        finally:
            await db.close()

    asyncio.run(scenario())


def test_reported_zero_score_is_kept(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1")
            settlement = SettlementOperations(db, capabilities=set())

            game = await settlement.start_run(player.id)
            result = await settlement.settle(game.id, normal_outcome(final_score=0), player.id)
            assert result.stats['best_score'] == 0
            assert (await settlement.get_run(game.id)).final_score == 0

            # Omitted score falls back to the server-computed one
            game = await settlement.start_run(player.id)
            result = await settlement.settle(game.id, normal_outcome(), player.id)
            assert result.stats['best_score'] == 9050
            assert (await settlement.get_run(game.id)).final_score == 9050
        finally:
            await db.close()

    asyncio.run(scenario())


def test_reward_uses_live_income_level(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1", coins=150)
            settlement = SettlementOperations(db, capabilities=set())
            game = await settlement.start_run(player.id)

            assert (await PlayerOperations(db).purchase_upgrade(player.id, "income")).accepted
            result = await settlement.settle(game.id, normal_outcome(), player.id)
            assert result.reward_coins == 606
            assert result.balance.coins == 606
        finally:
            await db.close()

    asyncio.run(scenario())


def test_infrastructure_failure_rolls_back_and_can_be_retried(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1")
            settlement = SettlementOperations(db, capabilities=set())
            game = await settlement.start_run(player.id)

            async def failing_ledger(*args, **kwargs):
                raise OperationalError("INSERT INTO ledger_entries", None, Exception("disk I/O error"))

            db.add_ledger_entry_atomic = failing_ledger
            result = await settlement.settle(game.id, normal_outcome(), player.id)
            assert isinstance(result, InfraError)

            run = await settlement.get_run(game.id)
            assert run.status == SessionStatus.IN_PROGRESS
            refreshed = await db.get_player(player.id)
            assert (refreshed.coins, refreshed.games_played) == (0, 0)

            del db.add_ledger_entry_atomic
            retry = await settlement.settle(game.id, normal_outcome(), player.id)
            assert retry.accepted
            assert retry.balance.coins == 600
        finally:
            await db.close()

    asyncio.run(scenario())


def test_ledger_invariant_violation_propagates(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1")
            settlement = SettlementOperations(db, capabilities=set())
            game = await settlement.start_run(player.id)

            async def broken_ledger(*args, **kwargs):
                raise LedgerInvariantError("credit produced a negative balance")

            db.add_ledger_entry_atomic = broken_ledger
            with pytest.raises(LedgerInvariantError):
                await settlement.settle(game.id, normal_outcome(), player.id)
            del db.add_ledger_entry_atomic

            assert (await settlement.get_run(game.id)).status == SessionStatus.IN_PROGRESS
        finally:
            await db.close()

    asyncio.run(scenario())


def test_ledger_reconstructs_balances(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1", coins=500)
            settlement = SettlementOperations(db, capabilities=set())
            players = PlayerOperations(db)

            for coins in (100, 250, 400):
                game = await settlement.start_run(player.id)
                assert (await settlement.settle(game.id, normal_outcome(coins_collected=coins), player.id)).accepted
            assert (await players.purchase_upgrade(player.id, "speed")).accepted
            assert (await players.purchase_upgrade(player.id, "jump")).accepted

            report = await db.verify_balance_integrity(player.id)
            assert report['integrity_check'] is True
            coins = report['currencies']['coins']
            assert coins['cached_balance'] == coins['calculated_balance']
            assert coins['chain_ok'] is True

            ledger = await db.get_ledger(player.id, Currency.COINS)
            refreshed = await db.get_player(player.id)
            assert sum(entry.amount for entry in ledger) == refreshed.coins
        finally:
            await db.close()

    asyncio.run(scenario())


def test_disabled_capability_is_rejected_explicitly(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1")
            disabled = SettlementOperations(db, capabilities=set())
            game = await disabled.start_run(player.id)

            result = await disabled.collect_gate(game.id, player.id, {'gate': 'x2'})
            assert isinstance(result, Rejected)
            assert result.reason == "capability disabled: collect_gate"
            assert result.kind == RejectionKind.FORBIDDEN

            enabled = SettlementOperations(db, capabilities={'collect_gate', 'damage_army'})
            recorded = await enabled.collect_gate(game.id, player.id, {'gate': 'x2'})
            assert isinstance(recorded, EventRecorded)
            recorded = await enabled.damage_army(game.id, player.id, 3)
            assert recorded.event_count == 2

            run = await enabled.get_run(game.id)
            assert [event['type'] for event in run.events] == ['collect_gate', 'damage_army']
            assert run.events[1]['payload'] == {'amount': 3}
        finally:
            await db.close()

    asyncio.run(scenario())


def test_track_seed_format():
    seed = generate_track_seed(42)
    millis, player_id, suffix = seed.split('-')
    assert millis.isdigit()
    assert player_id == '42'
    assert len(suffix) == 7
