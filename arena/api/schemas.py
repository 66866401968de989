"""
Request and response payloads.

Field names on the wire are camelCase; Python attributes are snake_case.
Run result numbers are deliberately left unconstrained here so that
implausible values reach the anti-cheat validator and are recorded as
rejections instead of failing request parsing.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from arena.data_models.game import GameOutcome


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class IdentityRequest(CamelModel):
    external_id: str = Field(..., alias="externalId", min_length=1, description="Identity provider subject")
    email: Optional[str] = None
    display_name: Optional[str] = Field(None, alias="displayName")
    avatar_url: Optional[str] = Field(None, alias="avatarUrl")


class BalanceModel(CamelModel):
    coins: int
    gems: int


class RunResultPayload(CamelModel):
    final_score: Optional[float] = Field(None, alias="finalScore")
    coins_collected: float = Field(..., alias="coinsCollected")
    max_army: float = Field(..., alias="maxArmy")
    distance_traveled: float = Field(..., alias="distanceTraveled")
    time_taken: float = Field(..., alias="timeTaken")
    did_finish: bool = Field(..., alias="didFinish")
    enemies_killed: float = Field(0, alias="enemiesKilled")
    perfect_gates: float = Field(0, alias="perfectGates")

    def to_outcome(self) -> GameOutcome:
        return GameOutcome(
            final_score=self.final_score,
            coins_collected=self.coins_collected,
            max_army=self.max_army,
            distance_traveled=self.distance_traveled,
            time_taken=self.time_taken,
            did_finish=self.did_finish,
            enemies_killed=self.enemies_killed,
            perfect_gates=self.perfect_gates,
        )


class FinishRunRequest(RunResultPayload):
    session_id: int = Field(..., alias="sessionId")


class RewardModel(CamelModel):
    coins: int


class SettlementResponse(CamelModel):
    accepted: bool
    reward: Optional[RewardModel] = None
    new_balance: Optional[BalanceModel] = Field(None, alias="newBalance")
    rejection_reason: Optional[str] = Field(None, alias="rejectionReason")
    unlocked_achievements: List[str] = Field(default_factory=list, alias="unlockedAchievements")
    completed_missions: List[str] = Field(default_factory=list, alias="completedMissions")


class StartRunResponse(CamelModel):
    session_id: int = Field(..., alias="sessionId")
    track_seed: str = Field(..., alias="trackSeed")
    difficulty: float
    track_length: float = Field(..., alias="trackLength")
    upgrades: dict


class ClaimMissionRequest(CamelModel):
    mission_id: str = Field(..., alias="missionId", min_length=1)


class SkinRequest(CamelModel):
    skin_id: str = Field(..., alias="skinId", min_length=1)


class LootboxRequest(CamelModel):
    box_type: str = Field(..., alias="boxType", min_length=1)


class JoinQueueRequest(CamelModel):
    stake: int = Field(..., ge=1, description="Coins each player puts in the pot")


class RunEventRequest(CamelModel):
    payload: dict = Field(default_factory=dict)
