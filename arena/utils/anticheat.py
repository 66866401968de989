"""
Anti-cheat validation for submitted runs.

The validator is pure and deterministic: it compares a submitted outcome with
the parameters frozen into the run's session snapshot and reports the first
failing check, in a fixed order (currency, distance, time, army, kills,
gates, score ceiling, non-negativity). It never touches the database.
"""

import math
from dataclasses import dataclass
from typing import Optional

from arena.constants import AntiCheatConstants, UpgradeType
from arena.data_models.game import GameOutcome, SessionSnapshot


class RejectionReason:
    """Stable reason strings returned to clients and stored on sessions."""
    TOO_MANY_PICKUPS = "exceeds maximum possible pickups"
    DISTANCE_EXCEEDED = "distance exceeds track length"
    IMPOSSIBLE_TIME = "completion time impossible"
    ARMY_EXCEEDED = "army exceeds upgrade-implied capacity"
    TOO_MANY_KILLS = "enemies killed exceeds track spawn density"
    TOO_MANY_GATES = "perfect gates exceed gates on track"
    SCORE_EXCEEDED = "score exceeds maximum possible"
    NEGATIVE_VALUES = "negative values detected"
    NON_FINITE_VALUES = "non-finite values detected"


@dataclass(frozen=True)
class ValidationResult:
    """Accept (valid=True) or reject with a reason"""
    valid: bool
    reason: Optional[str] = None
    
    @classmethod
    def accept(cls) -> 'ValidationResult':
        return cls(True)
    
    @classmethod
    def reject(cls, reason: str) -> 'ValidationResult':
        return cls(False, reason)


@dataclass(frozen=True)
class AntiCheatLimits:
    """Tunable tolerances; track geometry comes from the session snapshot."""
    max_coins_per_meter: float = AntiCheatConstants.MAX_COINS_PER_METER
    distance_overshoot: float = AntiCheatConstants.DISTANCE_OVERSHOOT
    min_time_buffer: float = AntiCheatConstants.MIN_TIME_BUFFER
    army_base: int = AntiCheatConstants.ARMY_BASE
    army_per_capacity_level: int = AntiCheatConstants.ARMY_PER_CAPACITY_LEVEL
    max_kills_per_meter: float = AntiCheatConstants.MAX_KILLS_PER_METER
    max_gates_per_meter: float = AntiCheatConstants.MAX_GATES_PER_METER
    max_final_score: int = AntiCheatConstants.MAX_FINAL_SCORE


class ResultValidator:
    """Checks a run outcome against physically possible bounds."""
    
    def __init__(self, limits: Optional[AntiCheatLimits] = None):
        self.limits = limits or AntiCheatLimits()
    
    def max_coins(self, snapshot: SessionSnapshot) -> float:
        return snapshot.track_length * self.limits.max_coins_per_meter
    
    def max_distance(self, snapshot: SessionSnapshot) -> float:
        return snapshot.track_length * (1 + self.limits.distance_overshoot)
    
    def min_completion_time(self, snapshot: SessionSnapshot) -> float:
        """Fastest physically possible finish, minus the variance buffer"""
        max_speed = snapshot.base_speed * snapshot.max_speed_multiplier
        return snapshot.track_length / max_speed * (1 - self.limits.min_time_buffer)
    
    def max_army(self, snapshot: SessionSnapshot) -> int:
        capacity_level = snapshot.upgrade_level(UpgradeType.CAPACITY)
        return self.limits.army_base + capacity_level * self.limits.army_per_capacity_level
    
    def max_kills(self, snapshot: SessionSnapshot) -> float:
        return snapshot.track_length * self.limits.max_kills_per_meter
    
    def max_gates(self, snapshot: SessionSnapshot) -> float:
        return snapshot.track_length * self.limits.max_gates_per_meter
    
    def validate(self, outcome: GameOutcome, snapshot: SessionSnapshot) -> ValidationResult:
        """
        Validate a submitted outcome against the session snapshot.
        
        Args:
            outcome: Client-submitted run result
            snapshot: Parameters frozen when the run started
            
        Returns:
            ValidationResult with the first failing reason, if any
        """
        if outcome.coins_collected > self.max_coins(snapshot):
            return ValidationResult.reject(RejectionReason.TOO_MANY_PICKUPS)
        
        if outcome.distance_traveled > self.max_distance(snapshot):
            return ValidationResult.reject(RejectionReason.DISTANCE_EXCEEDED)
        
        if outcome.did_finish and outcome.time_taken < self.min_completion_time(snapshot):
            return ValidationResult.reject(RejectionReason.IMPOSSIBLE_TIME)
        
        if outcome.max_army > self.max_army(snapshot):
            return ValidationResult.reject(RejectionReason.ARMY_EXCEEDED)
        
        if outcome.enemies_killed > self.max_kills(snapshot):
            return ValidationResult.reject(RejectionReason.TOO_MANY_KILLS)
        
        if outcome.perfect_gates > self.max_gates(snapshot):
            return ValidationResult.reject(RejectionReason.TOO_MANY_GATES)
        
        if outcome.final_score is not None and outcome.final_score > self.limits.max_final_score:
            return ValidationResult.reject(RejectionReason.SCORE_EXCEEDED)
        
        values = outcome.numeric_fields().values()
        # NaN slips through every comparison above
        if any(not math.isfinite(value) for value in values):
            return ValidationResult.reject(RejectionReason.NON_FINITE_VALUES)
        if any(value < 0 for value in values):
            return ValidationResult.reject(RejectionReason.NEGATIVE_VALUES)
        
        return ValidationResult.accept()
