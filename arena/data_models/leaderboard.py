"""
Leaderboard data models.

Immutable data transfer objects for leaderboard and player statistics views.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass(frozen=True)
class LeaderboardEntry:
    """Single leaderboard row."""
    rank: int
    player_id: int
    username: str
    best_score: int
    runs: int
    games_played: int
    win_rate: float
    current_skin: str


@dataclass(frozen=True)
class LeaderboardPage:
    """Top players for one time window."""
    period: str
    entries: List[LeaderboardEntry]
    total_players: int
    window_start: Optional[datetime] = None


@dataclass(frozen=True)
class RunSummary:
    session_id: int
    final_score: int
    coins_collected: int
    distance_traveled: float
    time_taken: float
    did_finish: bool
    reward_coins: int
    finished_at: Optional[datetime]


@dataclass(frozen=True)
class PlayerStats:
    """Lifetime statistics plus the most recent finished runs."""
    player_id: int
    username: str
    games_played: int
    games_won: int
    win_rate: float
    total_distance: float
    total_coins_collected: int
    best_score: int
    highest_army: int
    power_level: int
    recent_runs: List[RunSummary] = field(default_factory=list)
