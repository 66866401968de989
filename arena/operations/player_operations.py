"""
Player Operations Module

This module provides business logic operations for Player management:
turning an already-verified identity into an account, and spending coins on
upgrades.

Key functionality:
- upsert_identity(): Atomic identity -> Player conversion
- list_upgrades(): Upgrade catalogue with costs and affordability
- purchase_upgrade(): Atomic debit + level increment + ledger entry
"""

from typing import Optional, Union
from contextlib import asynccontextmanager
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from arena.config import Config
from arena.constants import ShopConstants, UpgradeType
from arena.data_models.settlement import (
    Balance, InfraError, PurchaseAccepted, PurchaseOutcome, Rejected, RejectionKind
)
from arena.database.models import Currency, LedgerCategory, OwnedSkin, Player, utc_now
from arena.operations.progress_operations import ProgressOperations
from arena.utils.arena_exceptions import InsufficientFundsError, PlayerNotFoundError
from arena.utils.economy import EconomyCalculator
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


class PlayerOperationError(Exception):
    """Base exception for player operation errors"""
    pass


class PlayerValidationError(PlayerOperationError):
    """Raised when identity data validation fails"""
    pass


class PlayerOperations:
    """
    Business logic operations for Player accounts and upgrades.

    Identity verification happens upstream; this class only consumes the
    verified (external_id, email, display_name, avatar_url) tuple.
    """

    def __init__(self, database, progress: Optional[ProgressOperations] = None):
        """Initialize with database instance"""
        self.db = database
        self.progress = progress or ProgressOperations(database)
        self.logger = logger

    @asynccontextmanager
    async def _get_session_context(self, session: Optional[AsyncSession] = None):
        """
        Provides a session context. Uses the provided session if available,
        otherwise creates and manages a new session.
        """
        if session:
            # If a session is provided, we do not manage its lifecycle
            yield session
        else:
            async with self.db.get_session() as new_session:
                yield new_session

    async def upsert_identity(self, external_id: str, email: Optional[str] = None,
                              display_name: Optional[str] = None,
                              avatar_url: Optional[str] = None) -> Player:
        """
        Get the Player for a verified identity, creating it on first sight.

        Idempotent: calling it again refreshes profile fields and activity.
        New accounts receive Config.STARTING_COINS / STARTING_GEMS through
        ledger entries, and own the default skin.

        Raises:
            PlayerValidationError: If the identity is unusable
            PlayerOperationError: If the database operation fails
        """
        if not external_id or not str(external_id).strip():
            raise PlayerValidationError("External identity id is required")
        external_id = str(external_id).strip()
        username = (display_name or "").strip() or f"Runner-{external_id[:8]}"

        try:
            async with self.db.transaction() as session:
                existing = (await session.execute(
                    select(Player).where(Player.external_id == external_id)
                )).scalar_one_or_none()

                if existing:
                    existing.username = username
                    if email is not None:
                        existing.email = email
                    if avatar_url is not None:
                        existing.avatar_url = avatar_url
                    existing.last_active = utc_now()
                    self.logger.debug(f"Found existing Player {existing.id} for identity {external_id}")
                    return existing

                player = Player(
                    external_id=external_id,
                    username=username,
                    email=email,
                    avatar_url=avatar_url,
                    coins=0,
                    gems=0,
                    current_skin=ShopConstants.DEFAULT_SKIN,
                    registered_at=utc_now(),
                    last_active=utc_now()
                )
                session.add(player)
                await session.flush()
                session.add(OwnedSkin(player_id=player.id, skin_id=ShopConstants.DEFAULT_SKIN))

                for currency, amount in ((Currency.COINS, Config.STARTING_COINS),
                                         (Currency.GEMS, Config.STARTING_GEMS)):
                    if amount > 0:
                        await self.db.add_ledger_entry_atomic(
                            player.id, currency, amount, LedgerCategory.ADMIN_GRANT,
                            "Starting balance", session
                        )

                self.logger.info(f"Created new Player {player.id} for identity {external_id} ({username})")
                return player

        except IntegrityError:
            # Lost a creation race for the same identity; the winner's row is authoritative
            player = await self.db.get_player_by_external_id(external_id)
            if player is None:
                raise PlayerOperationError(f"Could not create player for identity {external_id}")
            return player
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to upsert Player for identity {external_id}: {e}")
            raise PlayerOperationError(f"Database error in upsert_identity: {e}")

    async def get_player(self, external_id: str, session: Optional[AsyncSession] = None) -> Player:
        """
        Get an existing Player by identity (no auto-creation).

        Raises:
            PlayerNotFoundError: If no account exists for the identity
        """
        async with self._get_session_context(session) as s:
            player = (await s.execute(
                select(Player).where(Player.external_id == external_id)
            )).scalar_one_or_none()
        if player is None:
            raise PlayerNotFoundError(external_id)
        return player

    async def get_balance(self, player_id: int) -> Balance:
        player = await self.db.get_player(player_id)
        if player is None:
            raise PlayerNotFoundError(str(player_id))
        return Balance(coins=player.coins, gems=player.gems)

    async def list_upgrades(self, player_id: int) -> dict:
        """Upgrade catalogue for a player: level, next cost, power, affordability"""
        player = await self.db.get_player(player_id)
        if player is None:
            raise PlayerNotFoundError(str(player_id))
        return {
            'upgrades': EconomyCalculator.describe_upgrades(player.get_upgrade_levels(), player.coins),
            'power_level': EconomyCalculator.calculate_power_level(player.get_upgrade_levels()),
            'balance': {'coins': player.coins, 'gems': player.gems},
        }

    async def purchase_upgrade(self, player_id: int,
                               upgrade_type: Union[UpgradeType, str]) -> PurchaseOutcome:
        """
        Buy the next level of an upgrade.

        Under one transaction: lock the player, price the next level from the
        current one, debit coins with a ledger entry, raise the level by
        exactly one and advance upgrade achievements. An unaffordable level
        is rejected before anything changes.
        """
        try:
            upgrade_type = UpgradeType(upgrade_type)
        except ValueError:
            return Rejected(f"unknown upgrade type: {upgrade_type}", RejectionKind.VALIDATION)

        try:
            async with self.db.transaction() as session:
                player = await self.db.lock_player(session, player_id)
                level = player.get_upgrade_level(upgrade_type)
                cost = EconomyCalculator.calculate_cost(upgrade_type, level)

                await self.db.add_ledger_entry_atomic(
                    player_id, Currency.COINS, -cost, LedgerCategory.UPGRADE_PURCHASE,
                    f"Upgrade {upgrade_type.value} to level {level + 1}", session,
                    related_reference=upgrade_type.value
                )
                player.set_upgrade_level(upgrade_type, level + 1)
                unlocked = await self.progress.check_achievements(session, player)

                balance = Balance(coins=player.coins, gems=player.gems)
                new_level = player.get_upgrade_level(upgrade_type)

            self.logger.info(
                f"Player {player_id} upgraded {upgrade_type.value} to level {new_level} for {cost} coins"
            )
            return PurchaseAccepted(
                item=upgrade_type.value,
                cost=cost,
                currency=Currency.COINS.value,
                balance=balance,
                details={
                    'level': new_level,
                    'power': EconomyCalculator.calculate_power(upgrade_type, new_level),
                    'next_cost': EconomyCalculator.calculate_cost(upgrade_type, new_level),
                    'unlocked_achievements': unlocked,
                }
            )

        except InsufficientFundsError as e:
            return Rejected(e.user_message.lower(), RejectionKind.INSUFFICIENT_FUNDS)
        except PlayerNotFoundError as e:
            return Rejected(e.user_message, RejectionKind.NOT_FOUND)
        except SQLAlchemyError as e:
            self.logger.error(f"Upgrade purchase failed for player {player_id}: {e}", exc_info=True)
            return InfraError(f"Upgrade purchase aborted: {e.__class__.__name__}")
