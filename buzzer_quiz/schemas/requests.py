from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import List, Optional
from buzzer_quiz.schemas.game import AnswerStatus, Question


class CamelBody(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PlayerJoin(CamelBody):
    name: str
    subject: str


class PlayerJoined(CamelBody):
    player_id: str


class BuzzRequest(CamelBody):
    player_id: str


class BuzzResult(CamelBody):
    player_id: str
    won: bool


class JudgeRequest(CamelBody):
    status: AnswerStatus
    steal_player_id: Optional[str] = None


class TickRequest(CamelBody):
    new_time_remaining: Optional[int] = None


class PresenceUpdate(CamelBody):
    is_online: bool


# Question generation endpoint
class QuestionRequest(BaseModel):
    subject: str = Field(min_length=1)
    count: int = Field(default=5, ge=1, le=50)


class QuestionResponse(BaseModel):
    questions: List[Question]


class QuestionError(BaseModel):
    error: str
    details: str
    timestamp: str
