from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text, Float, JSON,
    ForeignKey, Enum as SQLEnum, UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from datetime import datetime, timezone
from enum import Enum
from typing import Dict

from arena.constants import UpgradeType
from arena.data_models.game import SessionSnapshot

Base = declarative_base()


def utc_now() -> datetime:
    """Naive UTC timestamp, matching how SQLite stores DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SessionStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"
    CANCELLED = "cancelled"

class GameType(Enum):
    SOLO = "solo"
    WAGER = "1v1"

class Currency(Enum):
    COINS = "coins"
    GEMS = "gems"

class LedgerCategory(Enum):
    GAME_REWARD = "game_reward"
    MISSION_REWARD = "mission_reward"
    ACHIEVEMENT_REWARD = "achievement_reward"
    UPGRADE_PURCHASE = "upgrade_purchase"
    SHOP_PURCHASE = "shop_purchase"
    LOOTBOX_REWARD = "lootbox_reward"
    WAGER_STAKE = "wager_stake"
    WAGER_PAYOUT = "wager_payout"
    WAGER_REFUND = "wager_refund"
    ADMIN_GRANT = "admin_grant"

class WagerStatus(Enum):
    PENDING = "pending"      # Stakes escrowed, waiting for both results
    SETTLED = "settled"      # Pot paid out
    CANCELLED = "cancelled"  # Stakes refunded

class MissionCadence(Enum):
    DAILY = "daily"
    WEEKLY = "weekly"

class MissionRequirement(Enum):
    PLAY_GAMES = "play_games"
    COLLECT_COINS = "collect_coins"
    REACH_ARMY = "reach_army"
    COMPLETE_RUN = "complete_run"
    FINISH_UNDER_TIME = "finish_under_time"
    COLLECT_TOTAL_COINS = "collect_total_coins"

class AchievementRequirement(Enum):
    GAMES_PLAYED = "games_played"
    GAMES_WON = "games_won"
    TOTAL_COINS = "total_coins"
    TOTAL_DISTANCE = "total_distance"
    HIGHEST_ARMY = "highest_army"
    BEST_SCORE = "best_score"
    UPGRADE_LEVEL = "upgrade_level"


# Upgrade track -> Player column
UPGRADE_COLUMNS = {upgrade_type: f"upgrade_{upgrade_type.value}" for upgrade_type in UpgradeType}


class Player(Base):
    __tablename__ = 'players'
    
    id = Column(Integer, primary_key=True)
    external_id = Column(String(128), unique=True, nullable=False, index=True)  # Identity provider subject
    username = Column(String(100), nullable=False)
    email = Column(String(255))
    avatar_url = Column(String(500))
    
    # Balances (cache of the ledger)
    coins = Column(Integer, default=0, nullable=False)
    gems = Column(Integer, default=0, nullable=False)
    
    # Upgrades, unbounded levels
    upgrade_capacity = Column(Integer, default=0, nullable=False)
    upgrade_add_warrior = Column(Integer, default=0, nullable=False)
    upgrade_warrior_upgrade = Column(Integer, default=0, nullable=False)
    upgrade_income = Column(Integer, default=0, nullable=False)
    upgrade_speed = Column(Integer, default=0, nullable=False)
    upgrade_jump = Column(Integer, default=0, nullable=False)
    upgrade_bullet_power = Column(Integer, default=0, nullable=False)
    upgrade_magnet_radius = Column(Integer, default=0, nullable=False)
    
    # Monotonic stats
    games_played = Column(Integer, default=0, nullable=False)
    games_won = Column(Integer, default=0, nullable=False)
    total_distance = Column(Float, default=0.0, nullable=False)
    total_coins_collected = Column(Integer, default=0, nullable=False)
    best_score = Column(Integer, default=0, nullable=False)
    highest_army = Column(Integer, default=0, nullable=False)
    
    # Cosmetics
    current_skin = Column(String(50), default="default", nullable=False)
    
    # Metadata
    registered_at = Column(DateTime, default=func.now())
    last_active = Column(DateTime, default=func.now())
    
    __table_args__ = (
        CheckConstraint('coins >= 0', name='ck_players_coins_non_negative'),
        CheckConstraint('gems >= 0', name='ck_players_gems_non_negative'),
    )
    
    def get_upgrade_level(self, upgrade_type: UpgradeType) -> int:
        return getattr(self, UPGRADE_COLUMNS[upgrade_type]) or 0
    
    def set_upgrade_level(self, upgrade_type: UpgradeType, level: int):
        setattr(self, UPGRADE_COLUMNS[upgrade_type], level)
    
    def get_upgrade_levels(self) -> Dict[str, int]:
        """Copy of all upgrade levels keyed by upgrade type value"""
        return {upgrade_type.value: self.get_upgrade_level(upgrade_type) for upgrade_type in UpgradeType}
    
    def get_balance(self, currency: Currency) -> int:
        return self.coins if currency == Currency.COINS else self.gems
    
    @property
    def win_rate(self) -> float:
        if self.games_played == 0:
            return 0.0
        return (self.games_won / self.games_played) * 100
    
    def __repr__(self):
        return f"<Player(external_id='{self.external_id}', username='{self.username}', coins={self.coins}, gems={self.gems})>"

class GameSession(Base):
    """
    One attempt at the track.
    
    Track geometry and upgrade levels are frozen at creation; anti-cheat uses
    this snapshot, never the player's live upgrades. Status moves
    in_progress -> finished | cancelled exactly once.
    """
    __tablename__ = 'game_sessions'
    
    id = Column(Integer, primary_key=True)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False, index=True)
    game_type = Column(SQLEnum(GameType), default=GameType.SOLO, nullable=False)
    
    # Immutable snapshot
    track_seed = Column(String(100), nullable=False)
    difficulty = Column(Float, default=1.0, nullable=False)
    track_length = Column(Float, nullable=False)
    base_speed = Column(Float, nullable=False)
    max_speed_multiplier = Column(Float, nullable=False)
    upgrade_snapshot = Column(JSON, nullable=False)
    
    status = Column(SQLEnum(SessionStatus), default=SessionStatus.PENDING, nullable=False)
    
    # Submitted outcome
    final_score = Column(Integer, default=0)
    coins_collected = Column(Integer, default=0)
    max_army = Column(Integer, default=0)
    distance_traveled = Column(Float, default=0.0)
    time_taken = Column(Float, default=0.0)
    did_finish = Column(Boolean, default=False)
    enemies_killed = Column(Integer, default=0)
    perfect_gates = Column(Integer, default=0)
    
    # Settlement
    reward_coins = Column(Integer, nullable=True)
    rejection_reason = Column(String(255), nullable=True)
    events = Column(JSON, nullable=True)  # Server-recorded gameplay events for enabled capabilities
    
    started_at = Column(DateTime, default=func.now())
    finished_at = Column(DateTime, nullable=True)
    
    player = relationship("Player")
    
    __table_args__ = (
        Index('ix_game_sessions_status_finished', 'status', 'finished_at'),
    )
    
    def snapshot(self) -> SessionSnapshot:
        """Rebuild the frozen validation parameters"""
        return SessionSnapshot(
            track_length=self.track_length,
            base_speed=self.base_speed,
            max_speed_multiplier=self.max_speed_multiplier,
            upgrade_levels=dict(self.upgrade_snapshot or {}),
            track_seed=self.track_seed,
            difficulty=self.difficulty,
        )
    
    def __repr__(self):
        return f"<GameSession(id={self.id}, player_id={self.player_id}, status={self.status.value})>"

class LedgerEntry(Base):
    """
    Append-only audit record of a single balance change.
    
    balance_after always equals balance_before + amount; replaying a player's
    entries in id order reconstructs the cached balance on Player.
    """
    __tablename__ = 'ledger_entries'
    
    id = Column(Integer, primary_key=True)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False, index=True)
    
    category = Column(SQLEnum(LedgerCategory), nullable=False)
    currency = Column(SQLEnum(Currency), nullable=False)
    amount = Column(Integer, nullable=False)          # Signed
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    description = Column(Text, nullable=False)
    
    # Optional references for context tracking
    related_session_id = Column(Integer, ForeignKey('game_sessions.id'), nullable=True)
    related_match_id = Column(Integer, ForeignKey('wager_matches.id'), nullable=True)
    related_reference = Column(String(100), nullable=True)  # Mission, achievement or item id
    
    timestamp = Column(DateTime, default=func.now())
    
    player = relationship("Player")
    
    __table_args__ = (
        CheckConstraint('balance_after = balance_before + amount', name='ck_ledger_balance_arithmetic'),
        CheckConstraint('balance_after >= 0', name='ck_ledger_balance_non_negative'),
        Index('ix_ledger_entries_player_currency', 'player_id', 'currency'),
    )
    
    def __repr__(self):
        return f"<LedgerEntry(player_id={self.player_id}, {self.category.value}, {self.amount} {self.currency.value}, after={self.balance_after})>"

class WagerMatch(Base):
    """
    A 1v1 match with both stakes escrowed at creation.
    
    Debits at creation equal payouts plus the retained house fee at
    settlement (or the refunds on cancellation).
    """
    __tablename__ = 'wager_matches'
    
    id = Column(Integer, primary_key=True)
    player_a_id = Column(Integer, ForeignKey('players.id'), nullable=False, index=True)
    player_b_id = Column(Integer, ForeignKey('players.id'), nullable=False, index=True)
    
    stake = Column(Integer, nullable=False)  # Identical for both players
    house_fee_rate = Column(Float, nullable=False)
    status = Column(SQLEnum(WagerStatus), default=WagerStatus.PENDING, nullable=False)
    
    track_seed = Column(String(100), nullable=False)
    snapshot_a = Column(JSON, nullable=False)  # Upgrade levels at match creation
    snapshot_b = Column(JSON, nullable=False)
    
    result_a = Column(JSON, nullable=True)
    result_b = Column(JSON, nullable=True)
    winner_id = Column(Integer, ForeignKey('players.id'), nullable=True)
    payout = Column(Integer, nullable=True)
    house_fee = Column(Integer, nullable=True)
    settlement_note = Column(String(255), nullable=True)
    
    created_at = Column(DateTime, default=func.now())
    settled_at = Column(DateTime, nullable=True)
    
    player_a = relationship("Player", foreign_keys=[player_a_id])
    player_b = relationship("Player", foreign_keys=[player_b_id])
    
    __table_args__ = (
        CheckConstraint('stake > 0', name='ck_wager_stake_positive'),
        CheckConstraint('player_a_id != player_b_id', name='ck_wager_distinct_players'),
    )
    
    @property
    def pot(self) -> int:
        return self.stake * 2
    
    def has_player(self, player_id: int) -> bool:
        return player_id in (self.player_a_id, self.player_b_id)
    
    def __repr__(self):
        return f"<WagerMatch(id={self.id}, stake={self.stake}, status={self.status.value})>"

class Mission(Base):
    """Daily or weekly mission definition"""
    __tablename__ = 'missions'
    
    id = Column(Integer, primary_key=True)
    mission_id = Column(String(50), unique=True, nullable=False)
    cadence = Column(SQLEnum(MissionCadence), nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    requirement_type = Column(SQLEnum(MissionRequirement), nullable=False)
    target = Column(Float, nullable=False)
    reward_coins = Column(Integer, default=0, nullable=False)
    reward_gems = Column(Integer, default=0, nullable=False)
    active = Column(Boolean, default=True)
    order = Column(Integer, default=0)
    
    __table_args__ = (
        CheckConstraint('target >= 1', name='ck_missions_target_positive'),
    )
    
    def __repr__(self):
        return f"<Mission(mission_id='{self.mission_id}', cadence={self.cadence.value})>"

class PlayerMission(Base):
    """A player's progress on one mission for the current cadence window"""
    __tablename__ = 'player_missions'
    
    id = Column(Integer, primary_key=True)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False, index=True)
    mission_id = Column(String(50), ForeignKey('missions.mission_id'), nullable=False)
    cadence = Column(SQLEnum(MissionCadence), nullable=False)
    progress = Column(Float, default=0.0, nullable=False)
    completed = Column(Boolean, default=False, nullable=False)
    claimed = Column(Boolean, default=False, nullable=False)
    assigned_at = Column(DateTime, default=func.now())
    
    mission = relationship("Mission")
    
    __table_args__ = (UniqueConstraint('player_id', 'mission_id'),)

class Achievement(Base):
    """Permanent achievement definition"""
    __tablename__ = 'achievements'
    
    id = Column(Integer, primary_key=True)
    achievement_id = Column(String(50), unique=True, nullable=False)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    requirement_type = Column(SQLEnum(AchievementRequirement), nullable=False)
    target = Column(Float, nullable=False)
    upgrade_type = Column(String(50), nullable=True)  # For upgrade_level requirements
    reward_coins = Column(Integer, default=0, nullable=False)
    reward_gems = Column(Integer, default=0, nullable=False)
    tier = Column(String(20), default="bronze")
    active = Column(Boolean, default=True)
    order = Column(Integer, default=0)
    
    def __repr__(self):
        return f"<Achievement(achievement_id='{self.achievement_id}', tier='{self.tier}')>"

class PlayerAchievement(Base):
    __tablename__ = 'player_achievements'
    
    id = Column(Integer, primary_key=True)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False, index=True)
    achievement_id = Column(String(50), ForeignKey('achievements.achievement_id'), nullable=False)
    progress = Column(Float, default=0.0, nullable=False)
    unlocked = Column(Boolean, default=False, nullable=False)
    unlocked_at = Column(DateTime, nullable=True)
    
    __table_args__ = (UniqueConstraint('player_id', 'achievement_id'),)

class OwnedSkin(Base):
    __tablename__ = 'owned_skins'
    
    id = Column(Integer, primary_key=True)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False, index=True)
    skin_id = Column(String(50), nullable=False)
    acquired_at = Column(DateTime, default=func.now())
    
    __table_args__ = (UniqueConstraint('player_id', 'skin_id'),)
