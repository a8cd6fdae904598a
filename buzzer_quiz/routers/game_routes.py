from fastapi import APIRouter, Depends
from typing import List, Optional
import logging
from buzzer_quiz.config import get_settings
from buzzer_quiz.game_logic import GameEngine, get_engine
from buzzer_quiz.game_timer import TimerRegistry, get_timers
from buzzer_quiz.schemas.game import GameState, Player
from buzzer_quiz.schemas.requests import (
    BuzzRequest, BuzzResult, JudgeRequest, PlayerJoin, PlayerJoined, PresenceUpdate, TickRequest
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/game", tags=["game"])


async def get_timer_registry() -> Optional[TimerRegistry]:
    """Timer registry when this process runs question clocks, otherwise None."""
    if not get_settings().SERVER_TIMER_ENABLED:
        return None
    return get_timers()


def _game_body(game: GameState) -> dict:
    return game.to_wire()


@router.post("/{room_id}")
async def create_game(room_id: str, engine: GameEngine = Depends(get_engine)) -> dict:
    """Create the room if it does not exist yet."""
    return _game_body(await engine.create_game(room_id))


@router.get("/{room_id}")
async def get_game(room_id: str, engine: GameEngine = Depends(get_engine)) -> dict:
    """Current game document."""
    return _game_body(await engine.get_game(room_id))


@router.post("/{room_id}/players", response_model=PlayerJoined, response_model_by_alias=True)
async def join_game(room_id: str, data: PlayerJoin, engine: GameEngine = Depends(get_engine)) -> PlayerJoined:
    """Join a player, or reconnect one with the same name and subject."""
    player_id = await engine.add_player(room_id, data.name, data.subject)
    return PlayerJoined(player_id=player_id)


@router.get("/{room_id}/players")
async def list_players(room_id: str, engine: GameEngine = Depends(get_engine)) -> List[dict]:
    """Live player documents in join order."""
    players: List[Player] = await engine.list_players(room_id)
    return [player.to_wire() for player in players]


@router.post("/{room_id}/players/{player_id}/presence")
async def update_presence(
    room_id: str,
    player_id: str,
    data: PresenceUpdate,
    engine: GameEngine = Depends(get_engine)
) -> dict:
    await engine.set_presence(room_id, player_id, data.is_online)
    return {"ok": True}


@router.post("/{room_id}/start")
async def start_game(
    room_id: str,
    engine: GameEngine = Depends(get_engine),
    timers: Optional[TimerRegistry] = Depends(get_timer_registry)
) -> dict:
    """Start the quiz on the first player's first question."""
    game = await engine.start_game(room_id)
    if timers is not None:
        await timers.ensure(room_id, engine)
    return _game_body(game)


@router.post("/{room_id}/tick")
async def tick(room_id: str, data: Optional[TickRequest] = None, engine: GameEngine = Depends(get_engine)) -> dict:
    """Manual clock tick for an external host controller."""
    new_time_remaining = data.new_time_remaining if data else None
    return _game_body(await engine.tick(room_id, new_time_remaining))


@router.post("/{room_id}/buzz", response_model=BuzzResult, response_model_by_alias=True)
async def buzz(room_id: str, data: BuzzRequest, engine: GameEngine = Depends(get_engine)) -> BuzzResult:
    won = await engine.buzz(room_id, data.player_id)
    return BuzzResult(player_id=data.player_id, won=won)


@router.post("/{room_id}/judge")
async def judge_answer(room_id: str, data: JudgeRequest, engine: GameEngine = Depends(get_engine)) -> dict:
    """Host verdict on the pending buzz."""
    return _game_body(await engine.judge_answer(room_id, data.status, data.steal_player_id))


@router.post("/{room_id}/next")
async def next_question(room_id: str, engine: GameEngine = Depends(get_engine)) -> dict:
    return _game_body(await engine.next_question(room_id))


@router.post("/{room_id}/reset-buzzers")
async def reset_buzzers(room_id: str, engine: GameEngine = Depends(get_engine)) -> dict:
    await engine.reset_buzzers(room_id)
    return {"ok": True}


@router.post("/{room_id}/restart")
async def restart_game(room_id: str, engine: GameEngine = Depends(get_engine)) -> dict:
    """Back to the waiting room with all scores zeroed."""
    return _game_body(await engine.restart_game(room_id))
