import math
from decimal import Decimal, ROUND_FLOOR
from typing import Dict, Mapping, Optional, Union

from arena.config import Config
from arena.constants import EconomyConstants, UpgradeType
from arena.data_models.game import GameOutcome


def _as_upgrade_type(upgrade_type: Union[UpgradeType, str]) -> UpgradeType:
    if isinstance(upgrade_type, UpgradeType):
        return upgrade_type
    try:
        return UpgradeType(upgrade_type)
    except ValueError:
        raise ValueError(f"Unknown upgrade type: {upgrade_type}")


class EconomyCalculator:
    """Pure economy rules: upgrade pricing, upgrade power and run rewards"""
    
    @staticmethod
    def calculate_cost(upgrade_type: Union[UpgradeType, str], current_level: int) -> int:
        """
        Calculate the price of buying the next level of an upgrade
        
        Formula: floor(base_cost * 1.5 ^ current_level), evaluated in integer
        arithmetic so arbitrarily high levels stay exact.
        
        Args:
            upgrade_type: Upgrade track being purchased
            current_level: Level the player currently owns
            
        Returns:
            Cost in coins of going from current_level to current_level + 1
        """
        if current_level < 0:
            raise ValueError(f"Upgrade level cannot be negative: {current_level}")
        
        base_cost = EconomyConstants.BASE_COSTS[_as_upgrade_type(upgrade_type)]
        numerator = EconomyConstants.COST_GROWTH_NUMERATOR ** current_level
        denominator = EconomyConstants.COST_GROWTH_DENOMINATOR ** current_level
        return (base_cost * numerator) // denominator
    
    @staticmethod
    def calculate_power(upgrade_type: Union[UpgradeType, str], level: int) -> float:
        """
        Calculate the effect magnitude of an upgrade at a level
        
        Effect grows linearly within each band of ten levels and doubles at
        every multiple of ten (floor division, not rounding):
        power = level * base_effect * 2 ^ floor(level / 10)
        
        Args:
            upgrade_type: Upgrade track
            level: Owned level
            
        Returns:
            Effect magnitude (fraction for percentage upgrades)
        """
        if level < 0:
            raise ValueError(f"Upgrade level cannot be negative: {level}")
        
        base_effect = EconomyConstants.BASE_EFFECTS[_as_upgrade_type(upgrade_type)]
        linear_power = level * base_effect
        multiplier = 2 ** (level // EconomyConstants.POWER_BREAKPOINT_LEVELS)
        return linear_power * multiplier
    
    @staticmethod
    def calculate_game_reward(outcome: GameOutcome, income_level: int,
                              income_rate: Optional[float] = None) -> int:
        """
        Calculate the coin reward for a validated run
        
        Args:
            outcome: Validated run result
            income_level: Player's income upgrade level
            income_rate: Multiplier increment per income level (Config.INCOME_RATE by default)
            
        Returns:
            Coins to credit, floored to an integer
        """
        if income_rate is None:
            income_rate = Config.INCOME_RATE
        
        time_bonus = max(
            0.0,
            (EconomyConstants.REWARD_PAR_TIME_SECONDS - outcome.time_taken)
            * EconomyConstants.REWARD_PER_SECOND_UNDER_PAR
        )
        base_reward = (
            EconomyConstants.REWARD_BASE
            + outcome.coins_collected
            + outcome.max_army * EconomyConstants.REWARD_PER_ARMY_UNIT
            + time_bonus
            + (outcome.enemies_killed or 0) * EconomyConstants.REWARD_PER_KILL
        )
        
        # Decimal keeps e.g. 600 * 1.01 from flooring to 605
        multiplier = 1 + Decimal(income_level) * Decimal(str(income_rate))
        reward = Decimal(repr(float(base_reward))) * multiplier
        return int(reward.to_integral_value(rounding=ROUND_FLOOR))
    
    @staticmethod
    def calculate_score(outcome: GameOutcome) -> int:
        """Calculate a leaderboard score from raw run fields"""
        time_bonus = max(
            0.0,
            (EconomyConstants.REWARD_PAR_TIME_SECONDS - outcome.time_taken)
            * EconomyConstants.SCORE_PER_SECOND_UNDER_PAR
        )
        score = (
            outcome.distance_traveled * EconomyConstants.SCORE_PER_METER
            + outcome.coins_collected * EconomyConstants.SCORE_PER_COIN
            + outcome.max_army * EconomyConstants.SCORE_PER_ARMY_UNIT
            + time_bonus
            + outcome.enemies_killed * EconomyConstants.SCORE_PER_KILL
            + outcome.perfect_gates * EconomyConstants.SCORE_PER_PERFECT_GATE
        )
        return math.floor(score)
    
    @staticmethod
    def resolve_score(outcome: GameOutcome) -> int:
        """Client-reported score when present (0 included), else the computed one"""
        if outcome.final_score is None:
            return EconomyCalculator.calculate_score(outcome)
        return math.floor(outcome.final_score)
    
    @staticmethod
    def calculate_power_level(upgrade_levels: Mapping[str, int]) -> int:
        """
        Aggregate upgrade levels into one scalar for matchmaking proximity
        
        Args:
            upgrade_levels: Mapping of upgrade type value to level
            
        Returns:
            Weighted sum of levels
        """
        return sum(
            int(upgrade_levels.get(upgrade_type.value, 0)) * weight
            for upgrade_type, weight in EconomyConstants.POWER_LEVEL_WEIGHTS.items()
        )
    
    @staticmethod
    def calculate_difficulty(games_played: int) -> float:
        """Track difficulty for a new run: min(1 + games / 20, 5)"""
        return min(
            1 + games_played / EconomyConstants.DIFFICULTY_GAMES_PER_STEP,
            EconomyConstants.MAX_DIFFICULTY
        )
    
    @staticmethod
    def describe_upgrades(upgrade_levels: Mapping[str, int], coins: int) -> Dict[str, dict]:
        """
        Build the upgrade catalogue view for a player
        
        Returns:
            Mapping of upgrade type value to level, next cost, current and next
            power, and whether the player can afford the next level
        """
        catalogue = {}
        for upgrade_type in UpgradeType:
            level = int(upgrade_levels.get(upgrade_type.value, 0))
            cost = EconomyCalculator.calculate_cost(upgrade_type, level)
            catalogue[upgrade_type.value] = {
                'level': level,
                'cost': cost,
                'power': round(EconomyCalculator.calculate_power(upgrade_type, level), 2),
                'next_power': round(EconomyCalculator.calculate_power(upgrade_type, level + 1), 2),
                'can_afford': coins >= cost,
            }
        return catalogue
