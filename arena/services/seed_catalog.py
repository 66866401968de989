"""
Default mission and achievement catalogs.

Seeded by Database.initialize_default_data() when the catalog tables are
empty; operators may edit or deactivate rows afterwards.
"""

from arena.database.models import AchievementRequirement, MissionCadence, MissionRequirement

DEFAULT_MISSIONS = [
    # Daily
    {'mission_id': 'daily_play_3', 'cadence': MissionCadence.DAILY, 'order': 1,
     'title': 'Warm Up', 'description': 'Play 3 runs',
     'requirement_type': MissionRequirement.PLAY_GAMES, 'target': 3,
     'reward_coins': 300, 'reward_gems': 0},
    {'mission_id': 'daily_coins_200', 'cadence': MissionCadence.DAILY, 'order': 2,
     'title': 'Coin Grabber', 'description': 'Collect 200 coins in a single run',
     'requirement_type': MissionRequirement.COLLECT_COINS, 'target': 200,
     'reward_coins': 400, 'reward_gems': 0},
    {'mission_id': 'daily_army_20', 'cadence': MissionCadence.DAILY, 'order': 3,
     'title': 'Raise an Army', 'description': 'Reach an army of 20 in a single run',
     'requirement_type': MissionRequirement.REACH_ARMY, 'target': 20,
     'reward_coins': 500, 'reward_gems': 0},
    {'mission_id': 'daily_finish', 'cadence': MissionCadence.DAILY, 'order': 4,
     'title': 'Finish Line', 'description': 'Reach the end of the track',
     'requirement_type': MissionRequirement.COMPLETE_RUN, 'target': 1,
     'reward_coins': 250, 'reward_gems': 1},
    # Weekly
    {'mission_id': 'weekly_play_25', 'cadence': MissionCadence.WEEKLY, 'order': 10,
     'title': 'Marathon', 'description': 'Play 25 runs this week',
     'requirement_type': MissionRequirement.PLAY_GAMES, 'target': 25,
     'reward_coins': 3000, 'reward_gems': 10},
    {'mission_id': 'weekly_speedrun_60', 'cadence': MissionCadence.WEEKLY, 'order': 11,
     'title': 'Speedrunner', 'description': 'Finish a run in 60 seconds or less',
     'requirement_type': MissionRequirement.FINISH_UNDER_TIME, 'target': 60,
     'reward_coins': 2000, 'reward_gems': 15},
    {'mission_id': 'weekly_total_coins_10000', 'cadence': MissionCadence.WEEKLY, 'order': 12,
     'title': 'Hoarder', 'description': 'Collect 10,000 coins in total',
     'requirement_type': MissionRequirement.COLLECT_TOTAL_COINS, 'target': 10000,
     'reward_coins': 2500, 'reward_gems': 20},
]

DEFAULT_ACHIEVEMENTS = [
    {'achievement_id': 'first_run', 'name': 'First Steps', 'description': 'Play your first run',
     'requirement_type': AchievementRequirement.GAMES_PLAYED, 'target': 1,
     'reward_coins': 100, 'reward_gems': 0, 'tier': 'bronze', 'order': 1},
    {'achievement_id': 'veteran', 'name': 'Veteran', 'description': 'Play 100 runs',
     'requirement_type': AchievementRequirement.GAMES_PLAYED, 'target': 100,
     'reward_coins': 5000, 'reward_gems': 50, 'tier': 'gold', 'order': 2},
    {'achievement_id': 'first_finish', 'name': 'Finisher', 'description': 'Reach the finish line once',
     'requirement_type': AchievementRequirement.GAMES_WON, 'target': 1,
     'reward_coins': 200, 'reward_gems': 5, 'tier': 'bronze', 'order': 3},
    {'achievement_id': 'coin_collector', 'name': 'Coin Collector', 'description': 'Collect 50,000 coins in total',
     'requirement_type': AchievementRequirement.TOTAL_COINS, 'target': 50000,
     'reward_coins': 2000, 'reward_gems': 25, 'tier': 'silver', 'order': 4},
    {'achievement_id': 'long_distance', 'name': 'Long Distance', 'description': 'Run 10 km in total',
     'requirement_type': AchievementRequirement.TOTAL_DISTANCE, 'target': 10000,
     'reward_coins': 1500, 'reward_gems': 10, 'tier': 'silver', 'order': 5},
    {'achievement_id': 'warlord', 'name': 'Warlord', 'description': 'Reach an army of 50',
     'requirement_type': AchievementRequirement.HIGHEST_ARMY, 'target': 50,
     'reward_coins': 3000, 'reward_gems': 30, 'tier': 'gold', 'order': 6},
    {'achievement_id': 'high_scorer', 'name': 'High Scorer', 'description': 'Score 10,000 in a single run',
     'requirement_type': AchievementRequirement.BEST_SCORE, 'target': 10000,
     'reward_coins': 1000, 'reward_gems': 10, 'tier': 'silver', 'order': 7},
    {'achievement_id': 'upgrade_10', 'name': 'Tinkerer', 'description': 'Raise any upgrade to level 10',
     'requirement_type': AchievementRequirement.UPGRADE_LEVEL, 'target': 10, 'upgrade_type': None,
     'reward_coins': 1000, 'reward_gems': 20, 'tier': 'silver', 'order': 8},
    {'achievement_id': 'capacity_5', 'name': 'Room for More', 'description': 'Raise capacity to level 5',
     'requirement_type': AchievementRequirement.UPGRADE_LEVEL, 'target': 5, 'upgrade_type': 'capacity',
     'reward_coins': 500, 'reward_gems': 5, 'tier': 'bronze', 'order': 9},
]
