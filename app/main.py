import os
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from dotenv import load_dotenv

from scorebook.errors import ScorebookError
from scorebook.persistence import InMemoryPersistence, FirestorePersistence
from scorebook.scoring import DEFAULT_TOTAL_ROUNDS, parse_players

load_dotenv(dotenv_path=Path('.env.local'))

API_BASE = "/api/scorebook"


def _env_flag(name: str) -> bool:
    return os.getenv(name, "0").lower() in ("1", "true", "yes")


def default_total_rounds() -> int:
    try:
        return int(os.getenv("SCOREBOOK_DEFAULT_TOTAL_ROUNDS", str(DEFAULT_TOTAL_ROUNDS)))
    except ValueError:
        return DEFAULT_TOTAL_ROUNDS


def choose_persistence():
    players = parse_players(os.getenv("SCOREBOOK_PLAYERS"))
    if _env_flag("USE_INMEMORY"):
        return InMemoryPersistence(players=players)
    try:
        return FirestorePersistence(players=players)
    except Exception:
        # Fallback to in-memory if firestore client not available
        logging.getLogger("uvicorn.error").warning("[scorebook] firestore unavailable, using in-memory store")
        return InMemoryPersistence(players=players)


class StartBody(BaseModel):
    total_rounds: Optional[int] = None


class ScoreBody(BaseModel):
    points: Optional[int] = None


class TotalRoundsBody(BaseModel):
    total_rounds: int


class HideBody(BaseModel):
    hide: bool


class TagBody(BaseModel):
    tag: Optional[str] = None


class CloseBody(BaseModel):
    status: str = Field("completed", pattern="^(completed|abandoned)$")


class ResultBody(BaseModel):
    playerId: str
    rank: int = Field(..., ge=1)
    totalPoints: int
    roundsWon: int = 0


class SnapshotBody(BaseModel):
    id: str
    startedAt: Optional[datetime] = None
    endedAt: Optional[datetime] = None
    totalRounds: int = Field(..., ge=1)
    roundsPlayed: int = Field(0, ge=0)
    status: str = Field(..., pattern="^(active|completed|abandoned)$")
    hideScores: bool = False
    tag: Optional[str] = None
    notes: Optional[str] = None
    results: List[ResultBody] = []


def create_app(persistence=None) -> FastAPI:
    app = FastAPI(title="Scorebook Service", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"]
    )

    app.state.persistence = persistence or choose_persistence()

    @app.on_event("startup")
    async def _log_persistence():
        klass = app.state.persistence.__class__.__name__
        emulator = os.getenv("FIRESTORE_EMULATOR_HOST")
        project = os.getenv("GOOGLE_CLOUD_PROJECT")
        logging.getLogger("uvicorn.error").info(
            f"[scorebook] Persistence={klass} USE_INMEMORY={int(_env_flag('USE_INMEMORY'))} "
            f"FIRESTORE_EMULATOR_HOST={emulator or '-'} GOOGLE_CLOUD_PROJECT={project or '-'} "
            f"players={','.join(app.state.persistence.players)}"
        )

    @app.exception_handler(ScorebookError)
    async def _domain_error(request: Request, exc: ScorebookError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.code, "message": exc.detail})

    def load_game(game_id: str):
        game = app.state.persistence.get_game(game_id)
        if not game:
            raise HTTPException(status_code=404, detail="no game")
        return game

    @app.post(f"{API_BASE}/games")
    def start_game(body: StartBody):
        total = body.total_rounds if body.total_rounds is not None else default_total_rounds()
        game_id = app.state.persistence.start_game(total)
        return load_game(game_id)

    @app.get(f"{API_BASE}/games/active")
    def active_game():
        game_id = app.state.persistence.find_active_game_id()
        if not game_id:
            raise HTTPException(status_code=404, detail="no active game")
        return load_game(game_id)

    @app.get(f"{API_BASE}/history")
    def history(limit: int = Query(50, ge=1, le=200)):
        return app.state.persistence.list_completed_games(limit)

    @app.post(f"{API_BASE}/games/restore")
    def restore(body: SnapshotBody):
        app.state.persistence.restore_game(body.model_dump())
        return load_game(body.id)

    @app.get(f"{API_BASE}/games/{{game_id}}")
    def get_game(game_id: str):
        game = load_game(game_id)
        return game | {"rounds": app.state.persistence.list_rounds(game_id)}

    @app.get(f"{API_BASE}/games/{{game_id}}/rounds/{{round_id}}/scores")
    def round_scores(game_id: str, round_id: str):
        return app.state.persistence.get_round_scores(game_id, round_id)

    @app.put(f"{API_BASE}/games/{{game_id}}/rounds/{{round_id}}/scores/{{player_id}}")
    def set_score(game_id: str, round_id: str, player_id: str, body: ScoreBody):
        app.state.persistence.set_round_score(game_id, round_id, player_id, body.points)
        return app.state.persistence.get_round_scores(game_id, round_id)

    @app.put(f"{API_BASE}/games/{{game_id}}/total-rounds")
    def total_rounds(game_id: str, body: TotalRoundsBody):
        app.state.persistence.update_total_rounds(game_id, body.total_rounds)
        return load_game(game_id)

    @app.put(f"{API_BASE}/games/{{game_id}}/hide-scores")
    def hide_scores(game_id: str, body: HideBody):
        app.state.persistence.toggle_hide_scores(game_id, body.hide)
        return load_game(game_id)

    @app.put(f"{API_BASE}/games/{{game_id}}/tag")
    def tag(game_id: str, body: TagBody):
        app.state.persistence.update_tag(game_id, body.tag)
        return load_game(game_id)

    @app.post(f"{API_BASE}/games/{{game_id}}/sync-progress")
    def sync_progress(game_id: str):
        app.state.persistence.sync_progress(game_id)
        return load_game(game_id)

    @app.post(f"{API_BASE}/games/{{game_id}}/close")
    def close(game_id: str, body: Optional[CloseBody] = None):
        status = body.status if body else "completed"
        app.state.persistence.close_game(game_id, status)
        game = load_game(game_id)
        return game | {"results": app.state.persistence.get_results(game_id)}

    @app.get(f"{API_BASE}/games/{{game_id}}/results")
    def results(game_id: str):
        return app.state.persistence.get_results(game_id)

    @app.delete(f"{API_BASE}/games/{{game_id}}")
    def delete(game_id: str):
        return app.state.persistence.delete_game(game_id)

    return app


app = create_app()
