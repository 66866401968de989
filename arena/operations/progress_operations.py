"""
Progress Operations Module

Mission and achievement progress for players.

Key functionality:
- advance_after_run(): apply a settled run to mission progress and achievements
- check_achievements(): unlock achievements and pay their rewards
- claim_mission(): pay a completed mission exactly once
- reset_missions(): replace a cadence's mission rows with fresh ones

Progress writes happen inside the caller's transaction so that a run's
settlement and its progress either persist together or not at all.
"""

from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, update, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from arena.constants import UpgradeType
from arena.data_models.game import GameOutcome, ProgressEvent
from arena.data_models.settlement import (
    Balance, ClaimAccepted, ClaimOutcome, InfraError, Rejected, RejectionKind,
    SettlementMessage
)
from arena.database.models import (
    Achievement, AchievementRequirement, Currency, LedgerCategory, Mission,
    MissionCadence, MissionRequirement, Player, PlayerAchievement, PlayerMission,
    utc_now
)
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


# Requirements that latch to 1 once satisfied instead of accumulating toward the target
LATCHED_REQUIREMENTS = {MissionRequirement.COMPLETE_RUN, MissionRequirement.FINISH_UNDER_TIME}

ACHIEVEMENT_STAT_FIELDS = {
    AchievementRequirement.GAMES_PLAYED: 'games_played',
    AchievementRequirement.GAMES_WON: 'games_won',
    AchievementRequirement.TOTAL_COINS: 'total_coins_collected',
    AchievementRequirement.TOTAL_DISTANCE: 'total_distance',
    AchievementRequirement.HIGHEST_ARMY: 'highest_army',
    AchievementRequirement.BEST_SCORE: 'best_score',
}


def apply_mission_rule(mission: Mission, progress: float, event: ProgressEvent) -> float:
    """Return the new progress value of one mission after a run"""
    requirement = mission.requirement_type

    if requirement == MissionRequirement.PLAY_GAMES:
        return progress + event.games_played
    if requirement == MissionRequirement.COLLECT_COINS:
        return max(progress, event.coins_collected)
    if requirement == MissionRequirement.REACH_ARMY:
        return max(progress, event.max_army)
    if requirement == MissionRequirement.COMPLETE_RUN:
        return 1 if event.did_finish else progress
    if requirement == MissionRequirement.FINISH_UNDER_TIME:
        if event.did_finish and event.time_taken <= mission.target:
            return 1
        return progress
    if requirement == MissionRequirement.COLLECT_TOTAL_COINS:
        return event.total_coins_all_time
    return progress


def is_mission_complete(mission: Mission, progress: float) -> bool:
    if mission.requirement_type in LATCHED_REQUIREMENTS:
        return progress >= 1
    return progress >= mission.target


def achievement_progress(achievement: Achievement, player: Player) -> float:
    """Current value of the stat an achievement tracks"""
    requirement = achievement.requirement_type
    if requirement == AchievementRequirement.UPGRADE_LEVEL:
        if achievement.upgrade_type:
            return player.get_upgrade_level(UpgradeType(achievement.upgrade_type))
        return max(player.get_upgrade_levels().values())
    return getattr(player, ACHIEVEMENT_STAT_FIELDS[requirement]) or 0


class ProgressOperations:
    """Business logic for missions and achievements."""

    def __init__(self, database):
        """Initialize with database instance"""
        self.db = database
        self.logger = logger

    async def ensure_player_missions(self, session: AsyncSession, player_id: int,
                                     cadence: Optional[MissionCadence] = None) -> List[PlayerMission]:
        """
        Make sure the player has a progress row for every active mission.

        Returns:
            The player's mission rows (for one cadence if given)
        """
        mission_query = select(Mission).where(Mission.active == True)
        row_query = select(PlayerMission).where(PlayerMission.player_id == player_id)
        if cadence is not None:
            mission_query = mission_query.where(Mission.cadence == cadence)
            row_query = row_query.where(PlayerMission.cadence == cadence)

        missions = (await session.execute(mission_query.order_by(Mission.order))).scalars().all()
        rows = list((await session.execute(row_query)).scalars().all())

        existing = {row.mission_id for row in rows}
        for mission in missions:
            if mission.mission_id in existing:
                continue
            row = PlayerMission(
                player_id=player_id,
                mission_id=mission.mission_id,
                cadence=mission.cadence,
                progress=0.0,
                completed=False,
                claimed=False,
                assigned_at=utc_now()
            )
            session.add(row)
            rows.append(row)

        await session.flush()
        return rows

    async def advance_missions(self, session: AsyncSession, event: ProgressEvent) -> List[str]:
        """
        Apply a progress event to every open mission of the player.

        Returns:
            Mission ids that became completed with this event
        """
        await self.ensure_player_missions(session, event.player_id)

        result = await session.execute(
            select(PlayerMission, Mission)
            .join(Mission, Mission.mission_id == PlayerMission.mission_id)
            .where(
                PlayerMission.player_id == event.player_id,
                PlayerMission.completed == False,
                Mission.active == True
            )
        )

        completed = []
        for row, mission in result.all():
            row.progress = apply_mission_rule(mission, row.progress, event)
            if is_mission_complete(mission, row.progress):
                row.completed = True
                completed.append(mission.mission_id)

        await session.flush()
        if completed:
            self.logger.info(f"Player {event.player_id} completed missions: {', '.join(completed)}")
        return completed

    async def check_achievements(self, session: AsyncSession, player: Player) -> List[str]:
        """
        Unlock achievements the player now qualifies for and pay their rewards.

        Unlocking is one-way; each achievement pays once.

        Returns:
            Achievement ids unlocked by this call
        """
        achievements = (await session.execute(
            select(Achievement).where(Achievement.active == True).order_by(Achievement.order)
        )).scalars().all()
        rows = {
            row.achievement_id: row
            for row in (await session.execute(
                select(PlayerAchievement).where(PlayerAchievement.player_id == player.id)
            )).scalars().all()
        }

        newly_unlocked = []
        for achievement in achievements:
            row = rows.get(achievement.achievement_id)
            if row is None:
                row = PlayerAchievement(player_id=player.id, achievement_id=achievement.achievement_id)
                session.add(row)
            if row.unlocked:
                continue

            row.progress = achievement_progress(achievement, player)
            if row.progress >= achievement.target:
                row.unlocked = True
                row.unlocked_at = utc_now()
                newly_unlocked.append(achievement)

        await session.flush()

        for achievement in newly_unlocked:
            for currency, amount in ((Currency.COINS, achievement.reward_coins),
                                     (Currency.GEMS, achievement.reward_gems)):
                if amount > 0:
                    await self.db.add_ledger_entry_atomic(
                        player.id, currency, amount, LedgerCategory.ACHIEVEMENT_REWARD,
                        f"Achievement unlocked: {achievement.name}", session,
                        related_reference=achievement.achievement_id
                    )
            self.logger.info(f"Achievement unlocked for player {player.id}: {achievement.name}")

        return [achievement.achievement_id for achievement in newly_unlocked]

    async def advance_after_run(self, session: AsyncSession, player: Player,
                                outcome: GameOutcome) -> Tuple[List[str], List[str]]:
        """
        Push a settled run to missions and achievements within the caller's transaction.

        Returns:
            (completed mission ids, unlocked achievement ids)
        """
        event = ProgressEvent(
            player_id=player.id,
            games_played=1,
            coins_collected=outcome.coins_collected,
            max_army=outcome.max_army,
            did_finish=outcome.did_finish,
            time_taken=outcome.time_taken,
            total_coins_all_time=player.total_coins_collected
        )
        completed = await self.advance_missions(session, event)
        unlocked = await self.check_achievements(session, player)
        return completed, unlocked

    async def claim_mission(self, player_id: int, mission_id: str) -> ClaimOutcome:
        """
        Pay a completed mission's reward.

        The claimed flag flips false -> true with a guarded update, so a
        replayed or concurrent claim is rejected with "already claimed" and
        pays nothing.
        """
        try:
            async with self.db.transaction() as session:
                mission = (await session.execute(
                    select(Mission).where(Mission.mission_id == mission_id, Mission.active == True)
                )).scalar_one_or_none()
                if mission is None:
                    return Rejected(SettlementMessage.MISSION_NOT_FOUND, RejectionKind.NOT_FOUND)

                result = await session.execute(
                    update(PlayerMission)
                    .where(
                        PlayerMission.player_id == player_id,
                        PlayerMission.mission_id == mission_id,
                        PlayerMission.completed == True,
                        PlayerMission.claimed == False
                    )
                    .values(claimed=True)
                    .execution_options(synchronize_session=False)
                )

                if result.rowcount != 1:
                    row = (await session.execute(
                        select(PlayerMission).where(
                            PlayerMission.player_id == player_id,
                            PlayerMission.mission_id == mission_id
                        )
                    )).scalar_one_or_none()
                    if row is None:
                        return Rejected(SettlementMessage.MISSION_NOT_FOUND, RejectionKind.NOT_FOUND)
                    if row.claimed:
                        return Rejected(SettlementMessage.ALREADY_CLAIMED, RejectionKind.CONFLICT)
                    return Rejected(SettlementMessage.MISSION_NOT_COMPLETED, RejectionKind.CONFLICT)

                for currency, amount in ((Currency.COINS, mission.reward_coins),
                                         (Currency.GEMS, mission.reward_gems)):
                    if amount > 0:
                        await self.db.add_ledger_entry_atomic(
                            player_id, currency, amount, LedgerCategory.MISSION_REWARD,
                            f"Mission reward: {mission.title}", session,
                            related_reference=mission_id
                        )

                player = await self.db.lock_player(session, player_id)
                balance = Balance(coins=player.coins, gems=player.gems)

            self.logger.info(f"Player {player_id} claimed mission {mission_id}")
            return ClaimAccepted(
                mission_id=mission_id,
                reward_coins=mission.reward_coins,
                reward_gems=mission.reward_gems,
                balance=balance
            )

        except SQLAlchemyError as e:
            self.logger.error(f"Mission claim failed for player {player_id}, mission {mission_id}: {e}", exc_info=True)
            return InfraError(f"Mission claim aborted: {e.__class__.__name__}")

    async def list_missions(self, player_id: int) -> Dict[str, List[dict]]:
        """Active missions by cadence, merged with the player's progress"""
        async with self.db.transaction() as session:
            rows = await self.ensure_player_missions(session, player_id)
            progress = {row.mission_id: row for row in rows}
            missions = (await session.execute(
                select(Mission).where(Mission.active == True).order_by(Mission.order)
            )).scalars().all()

        listing = {cadence.value: [] for cadence in MissionCadence}
        for mission in missions:
            row = progress.get(mission.mission_id)
            listing[mission.cadence.value].append({
                'mission_id': mission.mission_id,
                'title': mission.title,
                'description': mission.description,
                'requirement_type': mission.requirement_type.value,
                'target': mission.target,
                'reward': {'coins': mission.reward_coins, 'gems': mission.reward_gems},
                'progress': row.progress if row else 0,
                'completed': row.completed if row else False,
                'claimed': row.claimed if row else False,
            })
        return listing

    async def list_achievements(self, player_id: int) -> dict:
        """All active achievements with progress and an unlock summary"""
        async with self.db.get_session() as session:
            achievements = (await session.execute(
                select(Achievement).where(Achievement.active == True).order_by(Achievement.order)
            )).scalars().all()
            rows = {
                row.achievement_id: row
                for row in (await session.execute(
                    select(PlayerAchievement).where(PlayerAchievement.player_id == player_id)
                )).scalars().all()
            }

        entries = []
        for achievement in achievements:
            row = rows.get(achievement.achievement_id)
            entries.append({
                'achievement_id': achievement.achievement_id,
                'name': achievement.name,
                'description': achievement.description,
                'tier': achievement.tier,
                'target': achievement.target,
                'reward': {'coins': achievement.reward_coins, 'gems': achievement.reward_gems},
                'progress': row.progress if row else 0,
                'unlocked': row.unlocked if row else False,
                'unlocked_at': row.unlocked_at.isoformat() if row and row.unlocked_at else None,
            })

        unlocked = sum(1 for entry in entries if entry['unlocked'])
        return {
            'achievements': entries,
            'stats': {
                'total': len(entries),
                'unlocked': unlocked,
                'percentage': (unlocked * 100 // len(entries)) if entries else 0,
            }
        }

    async def reset_missions(self, cadence: MissionCadence) -> int:
        """
        Replace every player's rows for a cadence with fresh zeroed rows.

        Returns:
            Number of players whose missions were reset
        """
        async with self.db.transaction() as session:
            await session.execute(
                delete(PlayerMission).where(PlayerMission.cadence == cadence)
            )
            player_ids = (await session.execute(select(Player.id))).scalars().all()
            for player_id in player_ids:
                await self.ensure_player_missions(session, player_id, cadence)

        self.logger.info(f"Reset {cadence.value} missions for {len(player_ids)} players")
        return len(player_ids)
