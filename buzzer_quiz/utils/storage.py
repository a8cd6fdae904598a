from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
from pydantic import BaseModel
from buzzer_quiz.schemas.game import GameState, Player
from buzzer_quiz.utils.errors import WriteConflictError, room_not_found_error, player_not_found_error
import asyncio
import copy
import inspect
import logging

logger = logging.getLogger(__name__)

GameCallback = Callable[[GameState], Union[None, Awaitable[None]]]
PlayersCallback = Callable[[List[Player]], Union[None, Awaitable[None]]]
Unsubscribe = Callable[[], None]


class Increment:
    """Field transform: add ``amount`` to the stored number (missing counts as 0)."""

    def __init__(self, amount: int):
        self.amount = amount

    def apply(self, current: Any) -> Any:
        return (current or 0) + self.amount

    def __repr__(self) -> str:
        return f"Increment({self.amount})"


class ArrayUnion:
    """Field transform: append each item that is not already in the stored list."""

    def __init__(self, items: List[Any]):
        self.items = [_plain(item) for item in items]

    def apply(self, current: Any) -> Any:
        result = list(current or [])
        for item in self.items:
            if item not in result:
                result.append(item)
        return result

    def __repr__(self) -> str:
        return f"ArrayUnion({len(self.items)} items)"


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True)
    if isinstance(value, Enum):
        return value.value
    return value


def _get_path(document: Dict[str, Any], path: str) -> Any:
    node: Any = document
    for key in path.split("."):
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    return node


def _set_path(document: Dict[str, Any], path: str, value: Any) -> None:
    keys = path.split(".")
    node = document
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            raise WriteConflictError(f"Cannot update '{path}': '{key}' is not set")
        node = child
    node[keys[-1]] = value


def _apply_fields(document: Dict[str, Any], fields: Dict[str, Any]) -> None:
    for path, value in fields.items():
        if isinstance(value, (Increment, ArrayUnion)):
            value = value.apply(_get_path(document, path))
        else:
            value = _plain(value)
        _set_path(document, path, value)


def _check_expected(document: Dict[str, Any], expected: Optional[Dict[str, Any]], label: str) -> None:
    for path, wanted in (expected or {}).items():
        found = _plain(_get_path(document, path))
        wanted = _plain(wanted)
        if found != wanted:
            raise WriteConflictError(f"{label}: expected {path}={wanted!r}, found {found!r}")


class Subscription:
    """One subscriber's ordered delivery.

    Snapshots are queued in commit order and handed to the callback by a task
    of its own, so a slow subscriber neither holds up writers nor reorders
    what the other subscribers see.
    """

    def __init__(self, callback: Callable[[Any], Union[None, Awaitable[None]]]):
        self.callback = callback
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self._task: Optional[asyncio.Task] = None

    def push(self, value: Any) -> None:
        if self.closed:
            return
        self.queue.put_nowait(value)
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._drain())

    def close(self) -> None:
        self.closed = True
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _drain(self) -> None:
        while not self.closed and not self.queue.empty():
            value = self.queue.get_nowait()
            try:
                result = self.callback(value)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Subscriber callback failed")
            finally:
                self.queue.task_done()

    async def delivered(self) -> None:
        """Wait until everything pushed so far has reached the callback."""
        if not self.closed:
            await self.queue.join()


class WriteBatch:
    """A set of document writes that the storage applies all together or not at all."""

    def __init__(self):
        self.operations: List[Tuple[str, str, Any, Optional[Dict[str, Any]]]] = []

    def create_player(self, player: Player) -> "WriteBatch":
        self.operations.append(("create_player", player.id, player.to_document(), None))
        return self

    def update_game(self, room_id: str, fields: Dict[str, Any],
                    expected: Optional[Dict[str, Any]] = None) -> "WriteBatch":
        self.operations.append(("update_game", room_id, fields, expected))
        return self

    def update_player(self, player_id: str, fields: Dict[str, Any],
                      expected: Optional[Dict[str, Any]] = None) -> "WriteBatch":
        self.operations.append(("update_player", player_id, fields, expected))
        return self

    def __len__(self) -> int:
        return len(self.operations)


class StorageBackend(ABC):
    """Abstract document store for game and player documents."""

    @abstractmethod
    async def get_game(self, room_id: str) -> Optional[GameState]:
        """Get game document by room id."""
        pass

    @abstractmethod
    async def create_game(self, game: GameState) -> bool:
        """Create the game document unless one exists. Returns True if created."""
        pass

    @abstractmethod
    async def get_player(self, player_id: str) -> Optional[Player]:
        """Get player document by id."""
        pass

    @abstractmethod
    async def list_players(self, room_id: str) -> List[Player]:
        """All player documents of a room, in join order."""
        pass

    @abstractmethod
    async def find_player(self, room_id: str, name: str, subject: str) -> Optional[Player]:
        """Player of a room with the given name and subject, if any."""
        pass

    @abstractmethod
    async def commit(self, batch: WriteBatch) -> None:
        """Apply every write of the batch atomically or raise without changing anything."""
        pass

    @abstractmethod
    def subscribe_game(self, room_id: str, callback: GameCallback) -> Unsubscribe:
        """Deliver the full game document to ``callback`` after every change, in commit order."""
        pass

    @abstractmethod
    def subscribe_players(self, room_id: str, callback: PlayersCallback) -> Unsubscribe:
        """Deliver the room's player list to ``callback`` after every player change, in commit order."""
        pass

    def batch(self) -> WriteBatch:
        return WriteBatch()

    async def update_game(self, room_id: str, fields: Dict[str, Any],
                          expected: Optional[Dict[str, Any]] = None) -> None:
        await self.commit(WriteBatch().update_game(room_id, fields, expected))

    async def update_player(self, player_id: str, fields: Dict[str, Any],
                            expected: Optional[Dict[str, Any]] = None) -> None:
        await self.commit(WriteBatch().update_player(player_id, fields, expected))


class MemoryStorage(StorageBackend):
    """In-memory storage for development and tests."""

    def __init__(self):
        self._games: Dict[str, Dict[str, Any]] = {}
        # insertion order is join order
        self._players: Dict[str, Dict[str, Any]] = {}
        self._game_subscribers: Dict[str, List[Subscription]] = {}
        self._player_subscribers: Dict[str, List[Subscription]] = {}
        self._lock = asyncio.Lock()

    async def get_game(self, room_id: str) -> Optional[GameState]:
        async with self._lock:
            document = self._games.get(room_id)
            return GameState.model_validate(document) if document is not None else None

    async def create_game(self, game: GameState) -> bool:
        async with self._lock:
            if game.id in self._games:
                return False
            self._games[game.id] = game.to_document()
            self._publish(self._game_subscribers.get(game.id, []), GameState.model_validate(self._games[game.id]))
        return True

    async def get_player(self, player_id: str) -> Optional[Player]:
        async with self._lock:
            document = self._players.get(player_id)
            return Player.model_validate(document) if document is not None else None

    async def list_players(self, room_id: str) -> List[Player]:
        async with self._lock:
            return self._room_players(room_id)

    async def find_player(self, room_id: str, name: str, subject: str) -> Optional[Player]:
        async with self._lock:
            for player in self._room_players(room_id):
                if player.name == name and player.subject == subject:
                    return player
            return None

    async def commit(self, batch: WriteBatch) -> None:
        async with self._lock:
            games, players = self._stage(batch)
            # validate everything before anything becomes visible
            new_games = {key: GameState.model_validate(doc) for key, doc in games.items()}
            new_players = {key: Player.model_validate(doc) for key, doc in players.items()}
            for key, game in new_games.items():
                self._games[key] = game.to_document()
            for key, player in new_players.items():
                self._players[key] = player.to_document()
            # queued under the lock so every subscriber sees commits in order
            for key, game in new_games.items():
                self._publish(self._game_subscribers.get(key, []), game)
            for room_id in {player.game_id for player in new_players.values()}:
                self._publish(self._player_subscribers.get(room_id, []), self._room_players(room_id))

    async def flush(self) -> None:
        """Wait until every change committed so far has reached its subscribers."""
        for registry in (self._game_subscribers, self._player_subscribers):
            for subscriptions in list(registry.values()):
                for subscription in list(subscriptions):
                    await subscription.delivered()

    def subscribe_game(self, room_id: str, callback: GameCallback) -> Unsubscribe:
        return self._subscribe(self._game_subscribers, room_id, callback)

    def subscribe_players(self, room_id: str, callback: PlayersCallback) -> Unsubscribe:
        return self._subscribe(self._player_subscribers, room_id, callback)

    def _stage(self, batch: WriteBatch) -> Tuple[Dict[str, Dict[str, Any]], Dict[str, Dict[str, Any]]]:
        games: Dict[str, Dict[str, Any]] = {}
        players: Dict[str, Dict[str, Any]] = {}
        for kind, key, payload, expected in batch.operations:
            if kind == "create_player":
                self._check_unique_player(key, payload, players)
                players[key] = copy.deepcopy(payload)
            elif kind == "update_game":
                document = games.get(key)
                if document is None:
                    if key not in self._games:
                        raise room_not_found_error(key)
                    document = copy.deepcopy(self._games[key])
                _check_expected(document, expected, f"game {key}")
                _apply_fields(document, payload)
                games[key] = document
            elif kind == "update_player":
                document = players.get(key)
                if document is None:
                    if key not in self._players:
                        raise player_not_found_error(key)
                    document = copy.deepcopy(self._players[key])
                _check_expected(document, expected, f"player {key}")
                _apply_fields(document, payload)
                players[key] = document
            else:
                raise ValueError(f"Unknown batch operation: {kind}")
        return games, players

    def _check_unique_player(self, player_id: str, document: Dict[str, Any],
                             staged: Dict[str, Dict[str, Any]]) -> None:
        if player_id in self._players or player_id in staged:
            raise WriteConflictError(f"Player '{player_id}' already exists")
        identity = (document["gameId"], document["name"], document["subject"])
        for other in list(self._players.values()) + list(staged.values()):
            if (other["gameId"], other["name"], other["subject"]) == identity:
                raise WriteConflictError(
                    f"Player '{document['name']}' ({document['subject']}) already in game '{identity[0]}'"
                )

    def _room_players(self, room_id: str) -> List[Player]:
        return [
            Player.model_validate(document)
            for document in self._players.values()
            if document["gameId"] == room_id
        ]

    @staticmethod
    def _subscribe(registry: Dict[str, List[Subscription]], room_id: str, callback) -> Unsubscribe:
        subscription = Subscription(callback)
        registry.setdefault(room_id, []).append(subscription)

        def unsubscribe() -> None:
            subscriptions = registry.get(room_id, [])
            if subscription in subscriptions:
                subscriptions.remove(subscription)
            if not subscriptions:
                registry.pop(room_id, None)
            subscription.close()

        return unsubscribe

    @staticmethod
    def _publish(subscriptions: List[Subscription], value: Any) -> None:
        for subscription in subscriptions:
            if isinstance(value, list):
                subscription.push([item.model_copy(deep=True) for item in value])
            else:
                subscription.push(value.model_copy(deep=True))


# Global storage instance
storage: StorageBackend = MemoryStorage()


async def get_storage() -> StorageBackend:
    """Get the current storage backend."""
    return storage
