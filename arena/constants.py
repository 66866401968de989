"""
Game-wide constants for the Runner Arena backend.

This module contains the economy, anti-cheat, matchmaking and shop numbers used
throughout the codebase. Several historical client/server variants disagreed on
these values; the ones below are the canonical set and are treated as tunable
defaults rather than hard requirements.
"""

from enum import Enum


class UpgradeType(str, Enum):
    """Named upgrade tracks. Levels are unbounded."""
    CAPACITY = "capacity"              # Army capacity
    ADD_WARRIOR = "add_warrior"        # Starting army size
    WARRIOR_UPGRADE = "warrior_upgrade"  # Warrior power
    INCOME = "income"                  # Coin reward multiplier
    SPEED = "speed"                    # Movement speed
    JUMP = "jump"                      # Jump height
    BULLET_POWER = "bullet_power"      # Ranged damage
    MAGNET_RADIUS = "magnet_radius"    # Pickup radius


class EconomyConstants:
    """Constants for upgrade pricing, upgrade effects and run rewards."""
    
    # Cost formula: floor(base_cost * 1.5 ^ level)
    COST_GROWTH_NUMERATOR = 3
    COST_GROWTH_DENOMINATOR = 2
    
    BASE_COSTS = {
        UpgradeType.CAPACITY: 200,
        UpgradeType.ADD_WARRIOR: 500,
        UpgradeType.WARRIOR_UPGRADE: 300,
        UpgradeType.INCOME: 150,
        UpgradeType.SPEED: 100,
        UpgradeType.JUMP: 250,
        UpgradeType.BULLET_POWER: 400,
        UpgradeType.MAGNET_RADIUS: 200,
    }
    
    # Effect per level before the every-10-levels doubling
    BASE_EFFECTS = {
        UpgradeType.CAPACITY: 1,           # +1 soldier per level
        UpgradeType.ADD_WARRIOR: 0.5,      # +0.5 starting soldiers per level
        UpgradeType.WARRIOR_UPGRADE: 0.05,  # +5% warrior power per level
        UpgradeType.INCOME: 0.01,          # +1% coin value per level
        UpgradeType.SPEED: 0.02,           # +2% speed per level
        UpgradeType.JUMP: 0.02,            # +2% jump height per level
        UpgradeType.BULLET_POWER: 0.03,    # +3% bullet damage per level
        UpgradeType.MAGNET_RADIUS: 0.1,    # +0.1m magnet radius per level
    }
    POWER_BREAKPOINT_LEVELS = 10
    
    # Weights for the aggregate power level used by matchmaking
    POWER_LEVEL_WEIGHTS = {
        UpgradeType.CAPACITY: 10,
        UpgradeType.ADD_WARRIOR: 20,
        UpgradeType.WARRIOR_UPGRADE: 10,
        UpgradeType.INCOME: 5,
        UpgradeType.SPEED: 8,
        UpgradeType.JUMP: 6,
        UpgradeType.BULLET_POWER: 12,
        UpgradeType.MAGNET_RADIUS: 5,
    }
    
    # Run reward weights
    REWARD_BASE = 50
    REWARD_PER_ARMY_UNIT = 2
    REWARD_PAR_TIME_SECONDS = 120
    REWARD_PER_SECOND_UNDER_PAR = 2
    REWARD_PER_KILL = 5
    
    # Score weights (used when a client omits its own final score)
    SCORE_PER_METER = 10
    SCORE_PER_COIN = 1
    SCORE_PER_ARMY_UNIT = 10
    SCORE_PER_SECOND_UNDER_PAR = 5
    SCORE_PER_KILL = 20
    SCORE_PER_PERFECT_GATE = 50
    
    # Difficulty ramps with experience: min(1 + games / 20, 5)
    DIFFICULTY_GAMES_PER_STEP = 20
    MAX_DIFFICULTY = 5


class AntiCheatConstants:
    """Physical bounds used to decide whether a submitted run is plausible."""
    
    TRACK_LENGTH = 800            # meters
    PLAYER_BASE_SPEED = 50        # m/s
    MAX_SPEED_MULTIPLIER = 3      # Max realistic speed boost stack
    MAX_COINS_PER_METER = 2       # Generous pickup density estimate
    DISTANCE_OVERSHOOT = 0.10     # Frame overshoot at the finish line
    MIN_TIME_BUFFER = 0.20        # Legitimate variance on the fastest run
    ARMY_BASE = 30
    ARMY_PER_CAPACITY_LEVEL = 2
    MAX_KILLS_PER_METER = 0.5     # Densest enemy spawn pattern
    MAX_GATES_PER_METER = 0.05    # One gate pair every 20 m
    MAX_FINAL_SCORE = 10_000_000  # Ceiling for client-reported scores


class MatchmakingConstants:
    """Constants for the wagered 1v1 queue."""
    
    POWER_TOLERANCE = 0.10        # +/-10% of the larger power level
    QUEUE_TIMEOUT_SECONDS = 30
    MIN_STAKE = 1


class ShopConstants:
    """Skin and lootbox catalog used by the shop."""
    
    DEFAULT_SKIN = "default"
    
    SKINS = {
        "default": {"name": "Default", "rarity": "common", "price": {"coins": 0}},
        "fire": {"name": "Fire Runner", "rarity": "rare", "price": {"coins": 5000}},
        "ice": {"name": "Ice Runner", "rarity": "rare", "price": {"coins": 5000}},
        "golden": {"name": "Golden Runner", "rarity": "epic", "price": {"gems": 300}},
        "shadow": {"name": "Shadow Runner", "rarity": "epic", "price": {"gems": 400}},
        "cosmic": {"name": "Cosmic Runner", "rarity": "legendary", "price": {"gems": 800}},
        "rainbow": {"name": "Rainbow Runner", "rarity": "legendary", "price": {"gems": 1000}},
    }
    
    LOOTBOXES = {
        "bronze": {"price": 50, "coin_range": (500, 2000), "skin_chance": 0.1, "skin_rarity": "rare"},
        "silver": {"price": 150, "coin_range": (2000, 5000), "skin_chance": 0.2, "skin_rarity": "epic"},
        "gold": {"price": 300, "coin_range": (5000, 15000), "skin_chance": 0.3, "skin_rarity": "legendary"},
    }


class Capability(str, Enum):
    """
    Gameplay effects that were removed from the product.
    
    They stay addressable so old clients get an explicit rejection, and can
    be switched back on per deployment via Config.ENABLED_CAPABILITIES.
    """
    COLLECT_GATE = "collect_gate"
    DAMAGE_ARMY = "damage_army"
