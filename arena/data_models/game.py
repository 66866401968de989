"""
Game data models for run submission and validation.

Immutable value objects passed between the HTTP surface, the anti-cheat
validator, the reward calculator and the settlement transaction.
"""

from dataclasses import dataclass, field, asdict
from typing import Dict, Optional

from arena.constants import AntiCheatConstants, UpgradeType


@dataclass(frozen=True)
class GameOutcome:
    """A client-submitted result of one run. final_score is None when the client sent none."""
    final_score: Optional[float]
    coins_collected: float
    max_army: float
    distance_traveled: float
    time_taken: float
    did_finish: bool
    enemies_killed: float = 0
    perfect_gates: float = 0
    
    def numeric_fields(self) -> Dict[str, float]:
        """All numeric fields keyed by name, for bounds checks"""
        values = asdict(self)
        values.pop('did_finish')
        if values['final_score'] is None:
            values.pop('final_score')
        return values


@dataclass(frozen=True)
class SessionSnapshot:
    """
    Parameters frozen when a run starts.
    
    The upgrade levels here are a copy taken at session creation; anti-cheat
    bounds use them even if the player upgrades before submitting.
    """
    track_length: float = AntiCheatConstants.TRACK_LENGTH
    base_speed: float = AntiCheatConstants.PLAYER_BASE_SPEED
    max_speed_multiplier: float = AntiCheatConstants.MAX_SPEED_MULTIPLIER
    upgrade_levels: Dict[str, int] = field(default_factory=dict)
    track_seed: Optional[str] = None
    difficulty: float = 1.0
    
    def upgrade_level(self, upgrade_type: UpgradeType) -> int:
        return int(self.upgrade_levels.get(upgrade_type.value, 0))


@dataclass(frozen=True)
class ProgressEvent:
    """Normalized progress update pushed to missions and achievements after a run."""
    player_id: int
    games_played: int
    coins_collected: float
    max_army: float
    did_finish: bool
    time_taken: float
    total_coins_all_time: int
