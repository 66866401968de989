from typing import Optional, List, Dict
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy import select, update, func
from contextlib import asynccontextmanager

from arena.config import Config
from arena.database.models import (
    Base, Player, LedgerEntry, LedgerCategory, Currency,
    Mission, Achievement, utc_now
)
from arena.utils.arena_exceptions import (
    InsufficientFundsError, LedgerInvariantError, PlayerNotFoundError
)
from arena.utils.logger import setup_logger


def to_async_url(database_url: str) -> str:
    """Convert a sync sqlite URL to its aiosqlite form"""
    if database_url.startswith('sqlite:///'):
        return database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')
    return database_url


class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = to_async_url(database_url or Config.DATABASE_URL)
        self.engine = None
        self.async_session = None
    
    @property
    def session_factory(self):
        return self.async_session
        
    async def initialize(self, seed_catalog: bool = True):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")
        
        self.engine = create_async_engine(
            self.database_url,
            echo=Config.DEBUG,
            future=True
        )
        
        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )
        
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            
        self.logger.info("Database initialized successfully")
        
        if seed_catalog:
            await self.initialize_default_data()
        
    async def initialize_default_data(self):
        """Seed the mission and achievement catalogs when empty"""
        from arena.services.seed_catalog import DEFAULT_MISSIONS, DEFAULT_ACHIEVEMENTS
        
        async with self.transaction() as session:
            mission_count = await session.scalar(select(func.count(Mission.id)))
            if mission_count == 0:
                for definition in DEFAULT_MISSIONS:
                    session.add(Mission(**definition))
                self.logger.info(f"Added {len(DEFAULT_MISSIONS)} default missions")
            
            achievement_count = await session.scalar(select(func.count(Achievement.id)))
            if achievement_count == 0:
                for definition in DEFAULT_ACHIEVEMENTS:
                    session.add(Achievement(**definition))
                self.logger.info(f"Added {len(DEFAULT_ACHIEVEMENTS)} default achievements")
    
    @asynccontextmanager
    async def get_session(self):
        """Get a database session"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()
    
    @asynccontextmanager
    async def transaction(self):
        """
        Create a transaction boundary for atomic operations.
        
        All operations within the context are committed together on success,
        or rolled back together on failure.
        
        Usage:
            async with db.transaction() as session:
                player = await db.lock_player(session, player_id)
                await db.add_ledger_entry_atomic(player_id, ..., session=session)
                # Everything commits together here
        
        Exceptions must be allowed to propagate out of the context for the
        rollback to occur.
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()
    
    async def close(self):
        """Close the database connection"""
        if self.engine:
            await self.engine.dispose()
            self.logger.info("Database connection closed")
    
    # Player operations
    async def get_player_by_external_id(self, external_id: str) -> Optional[Player]:
        """Get a player by their identity provider id"""
        async with self.get_session() as session:
            result = await session.execute(
                select(Player).where(Player.external_id == external_id)
            )
            return result.scalar_one_or_none()
    
    async def get_player(self, player_id: int) -> Optional[Player]:
        async with self.get_session() as session:
            return await session.get(Player, player_id)
    
    async def lock_player(self, session: AsyncSession, player_id: int) -> Player:
        """
        Lock a player row for the rest of the transaction and return it fresh.
        
        Touching the row takes SQLite's write lock (where FOR UPDATE is a
        no-op) and a row lock elsewhere; FOR UPDATE then keeps Postgres-style
        backends serialized on the same row.
        """
        # Pending changes must reach the row before it is reloaded
        await session.flush()
        result = await session.execute(
            update(Player)
            .where(Player.id == player_id)
            .values(last_active=utc_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise PlayerNotFoundError(str(player_id))
        
        player_result = await session.execute(
            select(Player)
            .where(Player.id == player_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return player_result.scalar_one()
    
    # ============================================================================
    # Ledger Operations
    # ============================================================================
    
    async def add_ledger_entry_atomic(self, player_id: int, currency: Currency, amount: int,
                                      category: LedgerCategory, description: str,
                                      session: AsyncSession,
                                      related_session_id: Optional[int] = None,
                                      related_match_id: Optional[int] = None,
                                      related_reference: Optional[str] = None) -> LedgerEntry:
        """
        Apply a signed balance change and append its ledger entry (session-aware).
        
        The player row is locked for the rest of the caller's transaction. A
        spend that would go below zero raises InsufficientFundsError before
        anything is written; the caller's transaction decides whether to
        roll back.
        """
        if amount == 0:
            raise ValueError("Ledger entries must move a non-zero amount")
        
        player = await self.lock_player(session, player_id)
        
        balance_before = player.get_balance(currency)
        balance_after = balance_before + amount
        
        if balance_after < 0:
            if amount < 0:
                raise InsufficientFundsError(currency.value, balance_before, -amount, player_id)
            raise LedgerInvariantError(
                f"Credit of {amount} left player {player_id} {currency.value} at {balance_after}"
            )
        
        if currency == Currency.COINS:
            player.coins = balance_after
        else:
            player.gems = balance_after
        
        ledger_entry = LedgerEntry(
            player_id=player_id,
            category=category,
            currency=currency,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            description=description,
            related_session_id=related_session_id,
            related_match_id=related_match_id,
            related_reference=related_reference,
            timestamp=utc_now()
        )
        
        session.add(ledger_entry)
        await session.flush()  # Use flush to get ID, let caller handle commit
        
        self.logger.debug(
            f"Ledger {category.value}: player {player_id} {currency.value} "
            f"{balance_before} -> {balance_after} ({amount:+d})"
        )
        return ledger_entry
    
    async def grant_currency(self, player_id: int, currency: Currency, amount: int,
                             description: str = "Admin grant") -> LedgerEntry:
        """Credit a player outside any gameplay flow, in its own transaction"""
        async with self.transaction() as session:
            return await self.add_ledger_entry_atomic(
                player_id, currency, amount, LedgerCategory.ADMIN_GRANT, description, session
            )
    
    async def get_ledger(self, player_id: int, currency: Optional[Currency] = None,
                         limit: Optional[int] = None) -> List[LedgerEntry]:
        """Get ledger entries for a player in the order they were written"""
        async with self.get_session() as session:
            query = select(LedgerEntry).where(LedgerEntry.player_id == player_id)
            if currency is not None:
                query = query.where(LedgerEntry.currency == currency)
            query = query.order_by(LedgerEntry.id.asc())
            if limit:
                query = query.limit(limit)
            result = await session.execute(query)
            return list(result.scalars().all())
    
    async def verify_balance_integrity(self, player_id: int) -> Dict:
        """
        Replay a player's ledger and compare it with the cached balances.
        
        Checks both the running sum and that every entry starts where the
        previous one for the same currency ended.
        """
        async with self.get_session() as session:
            player = await session.get(Player, player_id)
            if player is None:
                raise PlayerNotFoundError(str(player_id))
            
            result = await session.execute(
                select(LedgerEntry)
                .where(LedgerEntry.player_id == player_id)
                .order_by(LedgerEntry.id.asc())
            )
            entries = result.scalars().all()
        
        report = {'player_id': player_id, 'integrity_check': True, 'currencies': {}}
        for currency in Currency:
            running = 0
            chain_ok = True
            for entry in entries:
                if entry.currency != currency:
                    continue
                if entry.balance_before != running or entry.balance_after != entry.balance_before + entry.amount:
                    chain_ok = False
                running += entry.amount
            
            cached = player.get_balance(currency)
            currency_ok = chain_ok and running == cached
            report['currencies'][currency.value] = {
                'cached_balance': cached,
                'calculated_balance': running,
                'chain_ok': chain_ok,
            }
            report['integrity_check'] = report['integrity_check'] and currency_ok
        
        return report
