"""
Upgrade purchase and shop tests. Balances never go negative and every
spend is a ledger entry.
"""

import asyncio
import random

from arena.data_models.settlement import PurchaseAccepted, Rejected, RejectionKind
from arena.database.models import Currency, LedgerCategory
from arena.operations.player_operations import PlayerOperations
from arena.operations.shop_operations import ShopOperations
from arena_helpers import ledger_count, make_database, make_player


def test_purchase_raises_level_by_one(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1", coins=1000)
            result = await PlayerOperations(db).purchase_upgrade(player.id, "speed")
            assert isinstance(result, PurchaseAccepted)
            assert result.cost == 100
            assert result.balance.coins == 900
            assert result.details['level'] == 1
            assert result.details['next_cost'] == 150

            ledger = await db.get_ledger(player.id)
            assert ledger[-1].category == LedgerCategory.UPGRADE_PURCHASE
            assert ledger[-1].amount == -100
        finally:
            await db.close()

    asyncio.run(scenario())


def test_unaffordable_upgrade_changes_nothing(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1", coins=99)
            result = await PlayerOperations(db).purchase_upgrade(player.id, "speed")
            assert isinstance(result, Rejected)
            assert result.reason == "insufficient coins"
            assert result.kind == RejectionKind.INSUFFICIENT_FUNDS

            refreshed = await db.get_player(player.id)
            assert refreshed.coins == 99
            assert refreshed.upgrade_speed == 0
            assert await ledger_count(db, player.id) == 1

            unknown = await PlayerOperations(db).purchase_upgrade(player.id, "teleport")
            assert unknown.reason == "unknown upgrade type: teleport"
        finally:
            await db.close()

    asyncio.run(scenario())


def test_buying_until_broke_never_goes_negative(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1", coins=1000)
            players = PlayerOperations(db)
            outcomes = [await players.purchase_upgrade(player.id, "speed") for _ in range(6)]
            assert [o.accepted for o in outcomes] == [True, True, True, True, False, False]

            refreshed = await db.get_player(player.id)
            # 1000 - (100 + 150 + 225 + 337)
            assert refreshed.coins == 188
            assert refreshed.upgrade_speed == 4
        finally:
            await db.close()

    asyncio.run(scenario())


def test_concurrent_purchases_are_serialized(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1", coins=300)
            players = PlayerOperations(db)
            results = await asyncio.gather(*[
                players.purchase_upgrade(player.id, "speed") for _ in range(5)
            ])
            assert sum(r.accepted for r in results) == 2

            refreshed = await db.get_player(player.id)
            assert refreshed.coins == 50
            assert refreshed.upgrade_speed == 2
            assert (await db.verify_balance_integrity(player.id))['integrity_check'] is True
        finally:
            await db.close()

    asyncio.run(scenario())


def test_list_upgrades(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1", coins=120)
            listing = await PlayerOperations(db).list_upgrades(player.id)
            assert listing['upgrades']['speed']['can_afford'] is True
            assert listing['upgrades']['capacity']['can_afford'] is False
            assert listing['power_level'] == 0
        finally:
            await db.close()

    asyncio.run(scenario())


def test_skin_purchase_and_equip(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1", coins=5000)
            shop = ShopOperations(db)

            not_owned = await shop.equip_skin(player.id, "fire")
            assert not_owned.kind == RejectionKind.FORBIDDEN

            bought = await shop.buy_skin(player.id, "fire")
            assert isinstance(bought, PurchaseAccepted)
            assert bought.balance.coins == 0

            again = await shop.buy_skin(player.id, "fire")
            assert again.reason == "skin already owned"
            assert again.kind == RejectionKind.CONFLICT

            broke = await shop.buy_skin(player.id, "golden")
            assert broke.kind == RejectionKind.INSUFFICIENT_FUNDS
            assert (await shop.buy_skin(player.id, "plaid")).kind == RejectionKind.NOT_FOUND

            assert await shop.equip_skin(player.id, "fire") is None
            assert (await db.get_player(player.id)).current_skin == "fire"

            listing = await shop.list_skins(player.id)
            owned = {skin['skin_id'] for skin in listing['skins'] if skin['owned']}
            assert owned == {"default", "fire"}
        finally:
            await db.close()

    asyncio.run(scenario())


class FixedRng:
    """Always rolls the low end and always hits the skin chance"""

    def randint(self, low, high):
        return low

    def random(self):
        return 0.0

    def choice(self, options):
        return options[0]


def test_roll_lootbox_skips_owned_skins():
    shop = ShopOperations(database=None, rng=FixedRng())
    assert shop.roll_lootbox("bronze", owned=set()) == {'coins': 500, 'skin': 'fire'}
    assert shop.roll_lootbox("bronze", owned={'fire'}) == {'coins': 500, 'skin': 'ice'}
    assert shop.roll_lootbox("bronze", owned={'fire', 'ice'})['skin'] is None


def test_open_lootbox_moves_gems_and_coins(database_url):
    async def scenario():
        db = await make_database(database_url)
        try:
            player = await make_player(db, "runner-1", gems=50)
            shop = ShopOperations(db, rng=random.Random(7))

            opened = await shop.open_lootbox(player.id, "bronze")
            assert isinstance(opened, PurchaseAccepted)
            assert opened.balance.gems == 0
            assert 500 <= opened.details['coins'] <= 2000
            assert opened.balance.coins == opened.details['coins']

            gem_entries = await db.get_ledger(player.id, Currency.GEMS)
            assert [e.amount for e in gem_entries] == [50, -50]

            broke = await shop.open_lootbox(player.id, "bronze")
            assert broke.kind == RejectionKind.INSUFFICIENT_FUNDS
            assert (await db.verify_balance_integrity(player.id))['integrity_check'] is True
        finally:
            await db.close()

    asyncio.run(scenario())
