from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Dict, List, Optional, Any
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base for stored documents: snake_case attributes, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# Game State Enums
class GameStatus(str, Enum):
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"


class AnswerStatus(str, Enum):
    PENDING = "pending"
    CORRECT = "correct"
    INCORRECT = "incorrect"
    STEAL = "steal"


class Question(BaseModel):
    model_config = ConfigDict(frozen=True)

    question: str
    answer: str
    difficulty: Optional[str] = None


class CurrentQuestion(WireModel):
    question: str
    answer: str
    player_id: str
    time_remaining: int = 30
    buzzed_player_id: Optional[str] = None
    answer_status: Optional[AnswerStatus] = None
    steal_player_id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        """True while the clock may run: nobody has buzzed and nothing is judged."""
        return self.buzzed_player_id is None and self.answer_status is None


class Player(WireModel):
    id: str
    game_id: str
    name: str
    subject: str
    score: int = 0
    buzzed: bool = False
    has_buzzed: bool = False
    is_online: bool = True
    last_seen: datetime = Field(default_factory=utcnow)
    questions: List[Question] = []

    def is_idle(self, max_idle_seconds: float, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return (now - self.last_seen).total_seconds() > max_idle_seconds


class GameState(WireModel):
    id: str
    is_active: bool = True
    status: GameStatus = GameStatus.WAITING
    players: List[Player] = []
    current_player_index: int = 0
    current_question_index: int = 0
    current_question: Optional[CurrentQuestion] = None
    scores: Dict[str, int] = {}
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("status", mode="before")
    @classmethod
    def _legacy_status(cls, value):
        # "completed" is the older spelling of the terminal state
        if value == "completed":
            return GameStatus.FINISHED
        return value

    @field_validator("current_player_index", "current_question_index", mode="before")
    @classmethod
    def _canonical_index(cls, value):
        if isinstance(value, str):
            return int(value.strip())
        return value

    def player_by_id(self, player_id: str) -> Optional[Player]:
        for player in self.players:
            if player.id == player_id:
                return player
        return None


# WebSocket Event Models
class WSEventType(str, Enum):
    # Client -> Server
    GAME_ACTION = "game_action"
    PING = "ping"

    # Server -> Client
    GAME_STATE = "game_state"
    PLAYERS_UPDATED = "players_updated"
    BUZZ_RESULT = "buzz_result"
    PONG = "pong"
    ERROR = "error"


class WSEvent(BaseModel):
    type: WSEventType
    payload: Dict[str, Any] = {}
    timestamp: Optional[float] = None
