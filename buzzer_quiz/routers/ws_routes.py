from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from typing import Callable, Dict, List, Optional, Set, Tuple
import json
import logging
import time
from buzzer_quiz.config import get_settings
from buzzer_quiz.game_logic import GameEngine, get_engine
from buzzer_quiz.schemas.game import GameState, Player, WSEvent, WSEventType
from buzzer_quiz.utils.errors import GameError, NotFoundError
from buzzer_quiz.utils.storage import StorageBackend

logger = logging.getLogger(__name__)

router = APIRouter()


def game_event(game: GameState) -> WSEvent:
    return WSEvent(type=WSEventType.GAME_STATE, payload={"game": game.to_wire()}, timestamp=time.time())


def players_event(players: List[Player]) -> WSEvent:
    return WSEvent(
        type=WSEventType.PLAYERS_UPDATED,
        payload={"players": [player.to_wire() for player in players]},
        timestamp=time.time()
    )


def error_event(message: str, code: Optional[str] = None) -> WSEvent:
    return WSEvent(type=WSEventType.ERROR, payload={"error": message, "code": code}, timestamp=time.time())


# Connection management
class ConnectionManager:
    def __init__(self):
        # room_id -> set of websockets
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        # websocket -> (room_id, player_id); player_id is None for host screens
        self.connection_info: Dict[WebSocket, Tuple[str, Optional[str]]] = {}
        # room_id -> store unsubscribe handles, held while the room has connections
        self._subscriptions: Dict[str, List[Callable[[], None]]] = {}

    async def connect(self, websocket: WebSocket, room_id: str, player_id: Optional[str], storage: StorageBackend):
        await websocket.accept()

        self.active_connections.setdefault(room_id, set()).add(websocket)
        self.connection_info[websocket] = (room_id, player_id)

        if room_id not in self._subscriptions:
            self._subscriptions[room_id] = [
                storage.subscribe_game(room_id, lambda game: self.broadcast_to_room(room_id, game_event(game))),
                storage.subscribe_players(
                    room_id, lambda players: self.broadcast_to_room(room_id, players_event(players))
                ),
            ]
            logger.info("Fan-out started for %s", room_id)

    def disconnect(self, websocket: WebSocket) -> Optional[Tuple[str, Optional[str]]]:
        info = self.connection_info.pop(websocket, None)
        if info is None:
            return None
        room_id, _ = info

        connections = self.active_connections.get(room_id)
        if connections is not None:
            connections.discard(websocket)
            if not connections:
                del self.active_connections[room_id]
                for unsubscribe in self._subscriptions.pop(room_id, []):
                    unsubscribe()
                logger.info("Fan-out stopped for %s", room_id)
        return info

    async def broadcast_to_room(self, room_id: str, event: WSEvent):
        if room_id not in self.active_connections:
            return

        message = event.model_dump_json()
        connections_to_remove = []

        for websocket in list(self.active_connections[room_id]):
            try:
                await websocket.send_text(message)
            except Exception:
                connections_to_remove.append(websocket)

        # Remove dead connections
        for websocket in connections_to_remove:
            self.disconnect(websocket)


# Global connection manager
manager = ConnectionManager()


@router.websocket("/ws/game/{room_id}")
async def websocket_endpoint(
    websocket: WebSocket,
    room_id: str,
    player_id: Optional[str] = None,
    engine: GameEngine = Depends(get_engine)
):
    # Verify game exists
    try:
        await engine.get_game(room_id)
        if player_id:
            await engine.get_player(room_id, player_id)
    except NotFoundError as e:
        await websocket.close(code=4004, reason=e.message)
        return

    await manager.connect(websocket, room_id, player_id, engine.storage)

    try:
        if player_id:
            await engine.set_presence(room_id, player_id, True)

        # Send initial state
        await websocket.send_text(game_event(await engine.get_game(room_id)).model_dump_json())
        await websocket.send_text(players_event(await engine.list_players(room_id)).model_dump_json())

        while True:
            data = await websocket.receive_text()
            await handle_websocket_message(websocket, engine, room_id, player_id, data)

    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("WebSocket error in %s", room_id)
    finally:
        manager.disconnect(websocket)
        if player_id:
            try:
                await engine.set_presence(room_id, player_id, False)
            except GameError as e:
                logger.warning("Could not mark %s offline: %s", player_id, e)


async def handle_websocket_message(websocket: WebSocket, engine: GameEngine, room_id: str,
                                   player_id: Optional[str], data: str):
    """Handle incoming WebSocket messages."""
    try:
        message = json.loads(data)
        if not isinstance(message, dict):
            await websocket.send_text(error_event("Expected a JSON object").model_dump_json())
            return
        event_type = message.get("type")
        payload = message.get("payload") or {}

        if event_type == WSEventType.GAME_ACTION:
            action = payload.get("action")
            if action != "buzz":
                await websocket.send_text(error_event(f"Unknown action: {action}").model_dump_json())
            elif not player_id:
                await websocket.send_text(error_event("Only players can buzz").model_dump_json())
            else:
                won = await engine.buzz(room_id, player_id)
                await websocket.send_text(WSEvent(
                    type=WSEventType.BUZZ_RESULT,
                    payload={"playerId": player_id, "won": won},
                    timestamp=time.time()
                ).model_dump_json())

        elif event_type == WSEventType.PING:
            if player_id:
                await engine.set_presence(room_id, player_id, True)
            # pings double as the room's presence sweep
            stale = await engine.mark_idle_players_offline(room_id, get_settings().PRESENCE_TIMEOUT_SEC)
            if stale:
                logger.info("Marked %s offline in %s", ", ".join(stale), room_id)
            await websocket.send_text(WSEvent(
                type=WSEventType.PONG,
                payload={"timestamp": time.time()},
                timestamp=time.time()
            ).model_dump_json())

        else:
            await websocket.send_text(error_event(f"Unknown event type: {event_type}").model_dump_json())

    except json.JSONDecodeError:
        await websocket.send_text(error_event("Invalid JSON").model_dump_json())
    except GameError as e:
        await websocket.send_text(error_event(e.message, e.code).model_dump_json())


__all__ = ["router", "manager"]
