"""
Result types for balance-moving operations.

Every operation that can move currency returns one of three shapes instead of
raising for business-rule failures:

- an operation-specific accepted result (``SettlementAccepted``, ...)
- ``Rejected(reason, kind)`` for anti-cheat and state-conflict failures
- ``InfraError(detail)`` when the atomic unit was aborted by the database

Only true invariant violations escape as exceptions.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Union


class RejectionKind(Enum):
    VALIDATION = "validation"        # Anti-cheat or malformed input
    CONFLICT = "conflict"            # Already settled, already claimed, not in progress
    NOT_FOUND = "not_found"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    FORBIDDEN = "forbidden"          # Resource belongs to another player or capability disabled


class SettlementMessage:
    """Stable reason strings for state conflicts."""
    SESSION_NOT_FOUND = "session not found"
    NOT_IN_PROGRESS = "session not in progress"
    ALREADY_SETTLED = "already settled"
    WRONG_PLAYER = "session belongs to another player"
    ALREADY_CLAIMED = "already claimed"
    MISSION_NOT_COMPLETED = "mission not completed"
    MISSION_NOT_FOUND = "mission not found"
    MATCH_NOT_FOUND = "match not found"
    MATCH_NOT_PENDING = "match not pending"
    MATCH_ALREADY_SETTLED = "match already settled"
    NOT_A_PARTICIPANT = "player not in match"
    RESULTS_INCOMPLETE = "match results incomplete"
    RESULT_ALREADY_SUBMITTED = "result already submitted"


@dataclass(frozen=True)
class Rejected:
    reason: str
    kind: RejectionKind = RejectionKind.VALIDATION
    player_id: Optional[int] = None   # Player who caused the rejection, if known
    accepted: bool = field(default=False, init=False)


@dataclass(frozen=True)
class InfraError:
    detail: str
    accepted: bool = field(default=False, init=False)


@dataclass(frozen=True)
class Balance:
    coins: int
    gems: int


@dataclass(frozen=True)
class SettlementAccepted:
    """A run was validated and its reward applied."""
    session_id: int
    reward_coins: int
    balance: Balance
    stats: Dict[str, float]
    unlocked_achievements: List[str] = field(default_factory=list)
    completed_missions: List[str] = field(default_factory=list)
    accepted: bool = field(default=True, init=False)


@dataclass(frozen=True)
class PurchaseAccepted:
    """An upgrade, skin or lootbox purchase went through."""
    item: str
    cost: int
    currency: str
    balance: Balance
    details: Dict[str, object] = field(default_factory=dict)
    accepted: bool = field(default=True, init=False)


@dataclass(frozen=True)
class ClaimAccepted:
    """A mission reward was paid."""
    mission_id: str
    reward_coins: int
    reward_gems: int
    balance: Balance
    accepted: bool = field(default=True, init=False)


@dataclass(frozen=True)
class WagerCreated:
    match_id: int
    stake: int
    player_ids: List[int]
    accepted: bool = field(default=True, init=False)


@dataclass(frozen=True)
class WagerSettled:
    match_id: int
    winner_id: Optional[int]  # None for a draw
    payouts: Dict[int, int]
    house_fee: int
    accepted: bool = field(default=True, init=False)


@dataclass(frozen=True)
class WagerResultRecorded:
    """One player's result is stored; the match settles when both are in."""
    match_id: int
    player_id: int
    awaiting: int
    accepted: bool = field(default=True, init=False)


@dataclass(frozen=True)
class WagerCancelled:
    match_id: int
    refunds: Dict[int, int]
    accepted: bool = field(default=True, init=False)


@dataclass(frozen=True)
class EventRecorded:
    """A capability-gated gameplay event was stored on an in-progress run."""
    session_id: int
    capability: str
    event_count: int
    accepted: bool = field(default=True, init=False)


SettlementOutcome = Union[SettlementAccepted, Rejected, InfraError]
PurchaseOutcome = Union[PurchaseAccepted, Rejected, InfraError]
ClaimOutcome = Union[ClaimAccepted, Rejected, InfraError]
WagerOutcome = Union[WagerCreated, WagerSettled, WagerResultRecorded, WagerCancelled, Rejected, InfraError]
EventOutcome = Union[EventRecorded, Rejected, InfraError]
