"""
Shop Operations Module

Cosmetic skins and lootboxes. Every spend and every lootbox payout is a
ledger entry written in the same transaction as the ownership change.
"""

import random
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from arena.constants import ShopConstants
from arena.data_models.settlement import (
    Balance, InfraError, PurchaseAccepted, PurchaseOutcome, Rejected, RejectionKind
)
from arena.database.models import Currency, LedgerCategory, OwnedSkin, Player
from arena.utils.arena_exceptions import InsufficientFundsError, PlayerNotFoundError
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


class ShopOperations:
    """Business logic for skins and lootboxes."""

    def __init__(self, database, rng: Optional[random.Random] = None):
        """
        Args:
            database: Database instance
            rng: Random source for lootbox rolls (seed it in tests)
        """
        self.db = database
        self.rng = rng or random.Random()
        self.logger = logger

    async def owned_skins(self, player_id: int) -> List[str]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(OwnedSkin.skin_id).where(OwnedSkin.player_id == player_id)
            )
            return list(result.scalars().all())

    async def list_skins(self, player_id: int) -> dict:
        """Skin catalog with ownership and the equipped skin"""
        player = await self.db.get_player(player_id)
        if player is None:
            raise PlayerNotFoundError(str(player_id))
        owned = set(await self.owned_skins(player_id))
        owned.add(ShopConstants.DEFAULT_SKIN)

        skins = []
        for skin_id, skin in ShopConstants.SKINS.items():
            currency, price = next(iter(skin['price'].items()))
            skins.append({
                'skin_id': skin_id,
                'name': skin['name'],
                'rarity': skin['rarity'],
                'currency': currency,
                'price': price,
                'owned': skin_id in owned,
                'equipped': skin_id == player.current_skin,
            })
        return {'skins': skins, 'current_skin': player.current_skin}

    async def buy_skin(self, player_id: int, skin_id: str) -> PurchaseOutcome:
        """Buy a skin with its listed currency; owned skins cannot be bought again"""
        skin = ShopConstants.SKINS.get(skin_id)
        if skin is None:
            return Rejected(f"unknown skin: {skin_id}", RejectionKind.NOT_FOUND)
        currency_name, price = next(iter(skin['price'].items()))
        currency = Currency(currency_name)

        try:
            async with self.db.transaction() as session:
                player = await self.db.lock_player(session, player_id)
                already_owned = (await session.execute(
                    select(OwnedSkin.id).where(OwnedSkin.player_id == player_id, OwnedSkin.skin_id == skin_id)
                )).scalar_one_or_none()
                if already_owned is not None or skin_id == ShopConstants.DEFAULT_SKIN:
                    return Rejected("skin already owned", RejectionKind.CONFLICT)

                if price > 0:
                    await self.db.add_ledger_entry_atomic(
                        player_id, currency, -price, LedgerCategory.SHOP_PURCHASE,
                        f"Purchased skin: {skin['name']}", session, related_reference=skin_id
                    )
                session.add(OwnedSkin(player_id=player_id, skin_id=skin_id))
                await session.flush()
                balance = Balance(coins=player.coins, gems=player.gems)

            self.logger.info(f"Player {player_id} bought skin {skin_id} for {price} {currency.value}")
            return PurchaseAccepted(item=skin_id, cost=price, currency=currency.value, balance=balance,
                                    details={'rarity': skin['rarity']})

        except InsufficientFundsError as e:
            return Rejected(e.user_message.lower(), RejectionKind.INSUFFICIENT_FUNDS)
        except PlayerNotFoundError as e:
            return Rejected(e.user_message, RejectionKind.NOT_FOUND)
        except IntegrityError:
            return Rejected("skin already owned", RejectionKind.CONFLICT)
        except SQLAlchemyError as e:
            self.logger.error(f"Skin purchase failed for player {player_id}: {e}", exc_info=True)
            return InfraError(f"Skin purchase aborted: {e.__class__.__name__}")

    async def equip_skin(self, player_id: int, skin_id: str) -> Optional[Rejected]:
        """
        Equip an owned skin.

        Returns:
            None on success, Rejected if the skin is unknown or not owned
        """
        if skin_id not in ShopConstants.SKINS:
            return Rejected(f"unknown skin: {skin_id}", RejectionKind.NOT_FOUND)

        async with self.db.transaction() as session:
            owned = skin_id == ShopConstants.DEFAULT_SKIN or (await session.execute(
                select(OwnedSkin.id).where(OwnedSkin.player_id == player_id, OwnedSkin.skin_id == skin_id)
            )).scalar_one_or_none() is not None
            if not owned:
                return Rejected("skin not owned", RejectionKind.FORBIDDEN)

            player = await session.get(Player, player_id)
            if player is None:
                return Rejected(PlayerNotFoundError(str(player_id)).user_message, RejectionKind.NOT_FOUND)
            player.current_skin = skin_id

        self.logger.debug(f"Player {player_id} equipped skin {skin_id}")
        return None

    def roll_lootbox(self, box_type: str, owned: set) -> dict:
        """
        Roll a lootbox's contents (no side effects).

        Coins are uniform within the box's range. With the box's skin chance
        the player also gets a random unowned skin of the box's rarity, if
        one is left.
        """
        box = ShopConstants.LOOTBOXES[box_type]
        low, high = box['coin_range']
        contents = {'coins': self.rng.randint(low, high), 'skin': None}

        if self.rng.random() < box['skin_chance']:
            candidates = sorted(
                skin_id for skin_id, skin in ShopConstants.SKINS.items()
                if skin['rarity'] == box['skin_rarity'] and skin_id not in owned
            )
            if candidates:
                contents['skin'] = self.rng.choice(candidates)
        return contents

    async def open_lootbox(self, player_id: int, box_type: str) -> PurchaseOutcome:
        """Pay gems for a lootbox and credit its contents in one transaction"""
        box = ShopConstants.LOOTBOXES.get(box_type)
        if box is None:
            return Rejected(f"unknown lootbox: {box_type}", RejectionKind.NOT_FOUND)

        try:
            async with self.db.transaction() as session:
                player = await self.db.lock_player(session, player_id)
                owned = set((await session.execute(
                    select(OwnedSkin.skin_id).where(OwnedSkin.player_id == player_id)
                )).scalars().all())

                await self.db.add_ledger_entry_atomic(
                    player_id, Currency.GEMS, -box['price'], LedgerCategory.SHOP_PURCHASE,
                    f"Opened {box_type} lootbox", session, related_reference=f"lootbox:{box_type}"
                )

                contents = self.roll_lootbox(box_type, owned)
                await self.db.add_ledger_entry_atomic(
                    player_id, Currency.COINS, contents['coins'], LedgerCategory.LOOTBOX_REWARD,
                    f"{box_type.title()} lootbox coins", session, related_reference=f"lootbox:{box_type}"
                )
                if contents['skin']:
                    session.add(OwnedSkin(player_id=player_id, skin_id=contents['skin']))
                    await session.flush()

                balance = Balance(coins=player.coins, gems=player.gems)

            self.logger.info(f"Player {player_id} opened {box_type} lootbox: {contents}")
            return PurchaseAccepted(item=f"lootbox:{box_type}", cost=box['price'],
                                    currency=Currency.GEMS.value, balance=balance, details=contents)

        except InsufficientFundsError as e:
            return Rejected(e.user_message.lower(), RejectionKind.INSUFFICIENT_FUNDS)
        except PlayerNotFoundError as e:
            return Rejected(e.user_message, RejectionKind.NOT_FOUND)
        except SQLAlchemyError as e:
            self.logger.error(f"Lootbox failed for player {player_id}: {e}", exc_info=True)
            return InfraError(f"Lootbox aborted: {e.__class__.__name__}")
