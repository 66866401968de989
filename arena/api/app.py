"""
FastAPI application factory and routes.

Identity is an external fact: every player-scoped request carries the
identity provider's subject in X-Player-Id, and POST /api/identity must have
been called once for it.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from arena.api.schemas import (
    ClaimMissionRequest, FinishRunRequest, IdentityRequest, JoinQueueRequest,
    LootboxRequest, RunEventRequest, RunResultPayload, SettlementResponse,
    SkinRequest, StartRunResponse
)
from arena.config import Config
from arena.constants import Capability
from arena.data_models.settlement import InfraError, Rejected, RejectionKind
from arena.database.database import Database
from arena.database.models import Currency, MissionCadence, Player
from arena.operations.player_operations import PlayerOperations, PlayerValidationError
from arena.operations.progress_operations import ProgressOperations
from arena.operations.settlement_operations import SettlementOperations
from arena.operations.shop_operations import ShopOperations
from arena.operations.wager_operations import WagerOperations
from arena.services.leaderboard import LeaderboardService
from arena.services.matchmaking import MatchmakingService
from arena.services.mission_reset_service import MissionResetService, time_until_reset
from arena.services.rate_limiter import SimpleRateLimiter, rate_limit
from arena.utils.arena_exceptions import ArenaException, PlayerNotFoundError, RateLimitError
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)

STATUS_BY_KIND = {
    RejectionKind.VALIDATION: 400,
    RejectionKind.CONFLICT: 409,
    RejectionKind.NOT_FOUND: 404,
    RejectionKind.INSUFFICIENT_FUNDS: 400,
    RejectionKind.FORBIDDEN: 403,
}

router = APIRouter(prefix="/api")


def status_for(outcome) -> int:
    if isinstance(outcome, InfraError):
        return 500
    if isinstance(outcome, Rejected):
        return STATUS_BY_KIND[outcome.kind]
    return 200


def unwrap(outcome) -> dict:
    """Return an accepted result as a dict, or raise the matching HTTP error"""
    if isinstance(outcome, InfraError):
        raise HTTPException(status_code=500, detail="Temporary server error, safe to retry")
    if isinstance(outcome, Rejected):
        raise HTTPException(status_code=STATUS_BY_KIND[outcome.kind], detail=outcome.reason)
    return asdict(outcome)


async def current_player(request: Request, x_player_id: Optional[str] = Header(None)) -> Player:
    if not x_player_id:
        raise HTTPException(status_code=401, detail="Missing X-Player-Id header")
    return await request.app.state.players.get_player(x_player_id)


# ---------- Identity & balance ----------

@router.post("/identity")
async def upsert_identity(payload: IdentityRequest, request: Request):
    player = await request.app.state.players.upsert_identity(
        payload.external_id, payload.email, payload.display_name, payload.avatar_url
    )
    return {
        'playerId': player.id,
        'username': player.username,
        'balance': {'coins': player.coins, 'gems': player.gems},
        'currentSkin': player.current_skin,
    }


@router.get("/balance")
async def get_balance(request: Request, player: Player = Depends(current_player)):
    balance = await request.app.state.players.get_balance(player.id)
    return asdict(balance)


# ---------- Runs ----------

@router.post("/runs/start", response_model=StartRunResponse,
             dependencies=[Depends(rate_limit("run_start", Config.RUN_START_RATE_LIMIT, Config.RUN_START_RATE_WINDOW))])
async def start_run(request: Request, player: Player = Depends(current_player)):
    game = await request.app.state.settlement.start_run(player.id)
    return StartRunResponse(
        session_id=game.id,
        track_seed=game.track_seed,
        difficulty=game.difficulty,
        track_length=game.track_length,
        upgrades=game.upgrade_snapshot,
    )


@router.post("/runs/finish", response_model=SettlementResponse)
async def finish_run(payload: FinishRunRequest, request: Request, player: Player = Depends(current_player)):
    outcome = await request.app.state.settlement.settle(payload.session_id, payload.to_outcome(), player.id)

    if isinstance(outcome, InfraError):
        body = SettlementResponse(accepted=False, rejection_reason="Temporary server error, safe to retry")
        return JSONResponse(status_code=500, content=body.model_dump(by_alias=True))
    if isinstance(outcome, Rejected):
        body = SettlementResponse(accepted=False, rejection_reason=outcome.reason)
        return JSONResponse(status_code=status_for(outcome), content=body.model_dump(by_alias=True))

    await request.app.state.leaderboard.invalidate_cache()
    return SettlementResponse(
        accepted=True,
        reward={'coins': outcome.reward_coins},
        new_balance=asdict(outcome.balance),
        unlocked_achievements=outcome.unlocked_achievements,
        completed_missions=outcome.completed_missions,
    )


@router.post("/runs/{session_id}/events/{capability}")
async def record_run_event(session_id: int, capability: Capability, payload: RunEventRequest,
                           request: Request, player: Player = Depends(current_player)):
    outcome = await request.app.state.settlement.record_event(
        session_id, player.id, capability, payload.payload
    )
    return unwrap(outcome)


# ---------- Upgrades ----------

@router.get("/upgrades")
async def list_upgrades(request: Request, player: Player = Depends(current_player)):
    return await request.app.state.players.list_upgrades(player.id)


@router.post("/upgrades/{upgrade_type}")
async def purchase_upgrade(upgrade_type: str, request: Request, player: Player = Depends(current_player)):
    return unwrap(await request.app.state.players.purchase_upgrade(player.id, upgrade_type))


# ---------- Missions & achievements ----------

@router.get("/missions")
async def list_missions(request: Request, player: Player = Depends(current_player)):
    missions = await request.app.state.progress.list_missions(player.id)
    return {
        **missions,
        'dailyResetIn': int(time_until_reset(MissionCadence.DAILY).total_seconds() * 1000),
        'weeklyResetIn': int(time_until_reset(MissionCadence.WEEKLY).total_seconds() * 1000),
    }


@router.post("/missions/claim")
async def claim_mission(payload: ClaimMissionRequest, request: Request, player: Player = Depends(current_player)):
    return unwrap(await request.app.state.progress.claim_mission(player.id, payload.mission_id))


@router.get("/achievements")
async def list_achievements(request: Request, player: Player = Depends(current_player)):
    return await request.app.state.progress.list_achievements(player.id)


# ---------- Shop ----------

@router.get("/shop/skins")
async def list_skins(request: Request, player: Player = Depends(current_player)):
    return await request.app.state.shop.list_skins(player.id)


@router.post("/shop/skins/buy")
async def buy_skin(payload: SkinRequest, request: Request, player: Player = Depends(current_player)):
    return unwrap(await request.app.state.shop.buy_skin(player.id, payload.skin_id))


@router.post("/shop/skins/equip")
async def equip_skin(payload: SkinRequest, request: Request, player: Player = Depends(current_player)):
    rejection = await request.app.state.shop.equip_skin(player.id, payload.skin_id)
    if rejection is not None:
        unwrap(rejection)
    return {'currentSkin': payload.skin_id}


@router.post("/shop/lootbox")
async def open_lootbox(payload: LootboxRequest, request: Request, player: Player = Depends(current_player)):
    return unwrap(await request.app.state.shop.open_lootbox(player.id, payload.box_type))


# ---------- Leaderboard, stats & ledger ----------

@router.get("/leaderboard")
async def get_leaderboard(request: Request, period: str = 'alltime', limit: int = 10):
    try:
        page = await request.app.state.leaderboard.get_leaderboard(period, limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return asdict(page)


@router.get("/stats")
async def get_stats(request: Request, player: Player = Depends(current_player)):
    return asdict(await request.app.state.leaderboard.get_player_stats(player.id))


@router.get("/ledger")
async def get_ledger(request: Request, currency: Optional[Currency] = None, limit: Optional[int] = None,
                     player: Player = Depends(current_player)):
    db = request.app.state.db
    entries = await db.get_ledger(player.id, currency, limit)
    return {
        'entries': [
            {
                'id': entry.id,
                'category': entry.category.value,
                'currency': entry.currency.value,
                'amount': entry.amount,
                'balanceBefore': entry.balance_before,
                'balanceAfter': entry.balance_after,
                'description': entry.description,
                'relatedSessionId': entry.related_session_id,
                'relatedMatchId': entry.related_match_id,
                'relatedReference': entry.related_reference,
                'timestamp': entry.timestamp,
            }
            for entry in entries
        ],
        'integrity': await db.verify_balance_integrity(player.id),
    }


# ---------- Matchmaking & wagers ----------

@router.post("/matchmaking/join")
async def join_matchmaking(payload: JoinQueueRequest, request: Request, player: Player = Depends(current_player)):
    return unwrap(await request.app.state.matchmaking.join(player.id, payload.stake))


@router.post("/matchmaking/leave")
async def leave_matchmaking(request: Request, player: Player = Depends(current_player)):
    return {'removed': await request.app.state.matchmaking.leave(player.id)}


@router.post("/matches/{match_id}/result")
async def submit_match_result(match_id: int, payload: RunResultPayload, request: Request,
                              player: Player = Depends(current_player)):
    return unwrap(await request.app.state.wagers.submit_result(match_id, player.id, payload.to_outcome()))


# ---------- Application ----------

def create_app(database_url: Optional[str] = None, start_background_jobs: bool = True) -> FastAPI:
    """
    Build the API application.

    Args:
        database_url: Overrides Config.DATABASE_URL (tests use a temp file)
        start_background_jobs: Run the periodic mission reset loop
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Config.validate()
        database = Database(database_url)
        await database.initialize()

        progress = ProgressOperations(database)
        app.state.db = database
        app.state.progress = progress
        app.state.players = PlayerOperations(database, progress)
        app.state.settlement = SettlementOperations(database, progress)
        app.state.wagers = WagerOperations(database)
        app.state.shop = ShopOperations(database)
        app.state.leaderboard = LeaderboardService(database.session_factory)
        app.state.matchmaking = MatchmakingService(database, app.state.wagers)
        app.state.rate_limiter = SimpleRateLimiter()
        app.state.mission_reset = MissionResetService(database, progress)

        stop_event = asyncio.Event()
        reset_task = None
        if start_background_jobs:
            reset_task = asyncio.create_task(app.state.mission_reset.run_periodically(stop_event))
        logger.info("Runner Arena API started")

        try:
            yield
        finally:
            stop_event.set()
            if reset_task:
                await reset_task
            waiting = await app.state.matchmaking.shutdown()
            if waiting:
                logger.info(f"Dropped {len(waiting)} queued players on shutdown")
            await database.close()
            logger.info("Runner Arena API stopped")

    app = FastAPI(title="Runner Arena API", version="1.0.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ArenaException)
    async def arena_exception_handler(request: Request, exc: ArenaException):
        if isinstance(exc, PlayerNotFoundError):
            status_code = 404
        elif isinstance(exc, RateLimitError):
            status_code = 429
        else:
            status_code = 400
        return JSONResponse(status_code=status_code, content={'detail': exc.user_message})

    @app.exception_handler(PlayerValidationError)
    async def player_validation_handler(request: Request, exc: PlayerValidationError):
        return JSONResponse(status_code=400, content={'detail': str(exc)})

    @app.get("/")
    def root():
        return {"message": "Runner Arena backend ready"}

    app.include_router(router)
    return app
