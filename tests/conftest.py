import asyncio
import json

import pytest

from buzzer_quiz.game_logic import GameEngine
from buzzer_quiz.schemas.game import Question
from buzzer_quiz.utils.errors import UpstreamUnavailableError
from buzzer_quiz.utils.storage import MemoryStorage

ROOM = "test-room"


class StaticQuestionSource:
    """Numbered questions per subject; records every call."""

    def __init__(self, limit=None):
        self.limit = limit
        self.calls = []

    async def generate(self, subject, count):
        self.calls.append((subject, count))
        available = count if self.limit is None else min(count, self.limit)
        return [
            Question(question=f"{subject} question {i + 1}?", answer=f"{subject} answer {i + 1}",
                     difficulty="medium")
            for i in range(available)
        ]


class FailingQuestionSource:
    async def generate(self, subject, count):
        raise UpstreamUnavailableError("trivia service down")


class BrokenQuestionSource:
    """Fails with an error outside the question source error family."""

    async def generate(self, subject, count):
        raise json.JSONDecodeError("Expecting value", "<html>", 0)


async def wait_until(predicate, timeout=2.0, step=0.01):
    """Poll an async predicate until it holds or the timeout passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if await predicate():
            return True
        await asyncio.sleep(step)
    return await predicate()


@pytest.fixture()
def storage():
    return MemoryStorage()


@pytest.fixture()
def question_source():
    return StaticQuestionSource()


@pytest.fixture()
def engine(storage, question_source):
    return GameEngine(storage, question_source, questions_per_player=2)
