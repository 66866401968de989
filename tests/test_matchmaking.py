"""
Matchmaking queue tests: compatibility, first-fit claiming, atomic claims
under concurrent joins, expiry and shutdown.
"""

import asyncio

import pytest

from arena.data_models.settlement import InfraError, Rejected, RejectionKind
from arena.database.models import Currency
from arena.operations.player_operations import PlayerOperations
from arena.operations.wager_operations import WagerOperations
from arena.services.matchmaking import (
    MatchmakingError, MatchmakingQueue, MatchmakingResult, MatchmakingService, QueueEntry
)
from arena_helpers import make_database, make_player


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def test_compatibility_requires_same_stake_and_close_power():
    queue = MatchmakingQueue(power_tolerance=0.10, timeout_seconds=30)
    assert queue.is_compatible(QueueEntry(1, 10, 100), QueueEntry(2, 10, 91))
    assert queue.is_compatible(QueueEntry(1, 10, 100), QueueEntry(2, 10, 90))
    assert not queue.is_compatible(QueueEntry(1, 10, 100), QueueEntry(2, 10, 89))
    assert not queue.is_compatible(QueueEntry(1, 10, 100), QueueEntry(2, 20, 100))
    assert queue.is_compatible(QueueEntry(1, 10, 0), QueueEntry(2, 10, 0))


def test_first_fit_in_join_order():
    async def scenario():
        queue = MatchmakingQueue(power_tolerance=0.10, timeout_seconds=30, clock=FakeClock())
        await queue.add(QueueEntry(1, 10, 100))
        await queue.add(QueueEntry(2, 10, 105))
        await queue.add(QueueEntry(3, 10, 98))

        opponent = await queue.find_and_claim_match(QueueEntry(4, 10, 102))
        assert opponent.player_id == 1
        assert queue.size() == 2
        assert not await queue.contains(1)

    asyncio.run(scenario())


def test_no_match_enqueues_requester():
    async def scenario():
        queue = MatchmakingQueue(power_tolerance=0.10, timeout_seconds=30, clock=FakeClock())
        assert await queue.match_or_enqueue(QueueEntry(1, 10, 100)) is None
        assert await queue.match_or_enqueue(QueueEntry(2, 50, 100)) is None
        assert queue.size() == 2

        opponent = await queue.match_or_enqueue(QueueEntry(3, 50, 95))
        assert opponent.player_id == 2
        assert queue.size() == 1

        # Rejoining replaces the earlier entry instead of duplicating it
        await queue.add(QueueEntry(1, 20, 100))
        assert queue.size() == 1

    asyncio.run(scenario())


def test_concurrent_requesters_cannot_claim_the_same_entry():
    async def scenario():
        queue = MatchmakingQueue(power_tolerance=0.10, timeout_seconds=30, clock=FakeClock())
        await queue.add(QueueEntry(1, 10, 100))

        claims = await asyncio.gather(*[
            queue.find_and_claim_match(QueueEntry(player_id, 10, 100)) for player_id in range(2, 12)
        ])
        assert sum(claim is not None for claim in claims) == 1
        assert queue.size() == 0

    asyncio.run(scenario())


def test_expired_entries_are_evicted_and_skipped():
    async def scenario():
        clock = FakeClock()
        queue = MatchmakingQueue(power_tolerance=0.10, timeout_seconds=30, clock=clock)
        await queue.add(QueueEntry(1, 10, 100))
        clock.now = 20
        await queue.add(QueueEntry(2, 10, 100))
        clock.now = 31

        # Entry 1 waited 31 s and is no longer offered
        opponent = await queue.find_and_claim_match(QueueEntry(3, 10, 100))
        assert opponent.player_id == 2

        expired = await queue.evict_expired()
        assert [entry.player_id for entry in expired] == [1]
        assert queue.size() == 0

    asyncio.run(scenario())


def test_independent_queues_do_not_share_state():
    async def scenario():
        first = MatchmakingQueue(clock=FakeClock())
        second = MatchmakingQueue(clock=FakeClock())
        await first.add(QueueEntry(1, 10, 0))
        assert first.size() == 1
        assert second.size() == 0

    asyncio.run(scenario())


def test_drained_queue_refuses_entries():
    async def scenario():
        queue = MatchmakingQueue(clock=FakeClock())
        await queue.add(QueueEntry(1, 10, 0))
        drained = await queue.drain()
        assert [entry.player_id for entry in drained] == [1]
        with pytest.raises(MatchmakingError):
            await queue.add(QueueEntry(2, 10, 0))

    asyncio.run(scenario())


def test_service_pairs_players_and_escrows_stakes(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            a = await make_player(db, "alice", coins=100)
            b = await make_player(db, "bob", coins=100)
            poor = await make_player(db, "carol", coins=5)
            service = MatchmakingService(db, WagerOperations(db, house_fee_rate=0.1),
                                         MatchmakingQueue(clock=FakeClock()))

            queued = await service.join(a.id, 20)
            assert isinstance(queued, MatchmakingResult)
            assert queued.status == 'queued'

            rejected = await service.join(poor.id, 20)
            assert isinstance(rejected, Rejected)
            assert rejected.kind == RejectionKind.INSUFFICIENT_FUNDS

            matched = await service.join(b.id, 20)
            assert matched.status == 'matched'
            assert matched.opponent_id == a.id
            assert matched.match_id is not None
            assert (await db.get_player(a.id)).coins == 80
            assert (await db.get_player(b.id)).coins == 80

            assert await service.leave(a.id) is False
            assert await service.shutdown() == []
        finally:
            await db.close()

    asyncio.run(scenario())


def test_service_keeps_mismatched_power_waiting(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            strong = await make_player(db, "strong", coins=1000)
            weak = await make_player(db, "weak", coins=1000)
            wagers = WagerOperations(db)
            service = MatchmakingService(db, wagers, MatchmakingQueue(clock=FakeClock()))

            assert (await PlayerOperations(db).purchase_upgrade(strong.id, "capacity")).accepted

            assert (await service.join(strong.id, 10)).status == 'queued'
            assert (await service.join(weak.id, 10)).status == 'queued'
            assert sorted(await service.shutdown()) == sorted([strong.id, weak.id])
        finally:
            await db.close()

    asyncio.run(scenario())


def test_insolvent_waiting_player_is_dropped_and_requester_queued(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            a = await make_player(db, "alice", coins=100)
            b = await make_player(db, "bob", coins=100)
            service = MatchmakingService(db, WagerOperations(db, house_fee_rate=0.1),
                                         MatchmakingQueue(clock=FakeClock()))

            assert (await service.join(a.id, 5)).status == 'queued'
            await db.grant_currency(a.id, Currency.COINS, -98, "Spent while queued")

            result = await service.join(b.id, 5)
            assert isinstance(result, MatchmakingResult)
            assert result.status == 'queued'
            assert result.insolvent == [a.id]
            assert await service.queue.contains(b.id)
            assert not await service.queue.contains(a.id)

            assert (await db.get_player(a.id)).coins == 2
            assert (await db.get_player(b.id)).coins == 100
        finally:
            await db.close()

    asyncio.run(scenario())


def test_requester_moves_on_to_next_waiting_player(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            broke = await make_player(db, "broke", coins=3)
            carol = await make_player(db, "carol", coins=100)
            bob = await make_player(db, "bob", coins=100)
            queue = MatchmakingQueue(clock=FakeClock())
            service = MatchmakingService(db, WagerOperations(db, house_fee_rate=0.1), queue)

            await queue.add(QueueEntry(broke.id, 5, 0))
            await queue.add(QueueEntry(carol.id, 5, 0))

            result = await service.join(bob.id, 5)
            assert result.status == 'matched'
            assert result.opponent_id == carol.id
            assert result.insolvent == [broke.id]
            assert queue.size() == 0
            assert (await db.get_player(carol.id)).coins == 95
            assert (await db.get_player(bob.id)).coins == 95
            assert (await db.get_player(broke.id)).coins == 3
        finally:
            await db.close()

    asyncio.run(scenario())


def test_rejection_names_the_player_who_cannot_cover_the_stake(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            rich = await make_player(db, "rich", coins=100)
            poor = await make_player(db, "poor", coins=3)
            result = await WagerOperations(db).create_match(rich.id, poor.id, 5)
            assert isinstance(result, Rejected)
            assert result.kind == RejectionKind.INSUFFICIENT_FUNDS
            assert result.player_id == poor.id
            assert str(poor.id) in result.reason
        finally:
            await db.close()

    asyncio.run(scenario())


class FailingWagers:
    async def create_match(self, player_a_id, player_b_id, stake):
        return InfraError("Match creation aborted: OperationalError")


def test_failed_escrow_restores_opponent_place_in_line(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            a = await make_player(db, "alice", coins=100)
            b = await make_player(db, "bob", coins=100)
            clock = FakeClock()
            queue = MatchmakingQueue(timeout_seconds=30, clock=clock)
            service = MatchmakingService(db, FailingWagers(), queue)

            assert (await service.join(a.id, 5)).status == 'queued'
            clock.now = 20
            result = await service.join(b.id, 5)
            assert isinstance(result, InfraError)

            assert await queue.contains(a.id)
            assert not await queue.contains(b.id)
            # Still joined at t=0, so it expires on the original schedule
            expired = await queue.evict_expired(now=31)
            assert [entry.player_id for entry in expired] == [a.id]
        finally:
            await db.close()

    asyncio.run(scenario())
