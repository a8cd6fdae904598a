import itertools
import logging
from typing import List, Protocol
from buzzer_quiz.config import Settings
from buzzer_quiz.schemas.game import Question
from buzzer_quiz.utils.chatgpt import ChatGPTQuestionGenerator
from buzzer_quiz.utils.errors import QuestionSourceError
from buzzer_quiz.utils.trivia_api import OpenTriviaQuestionSource

logger = logging.getLogger(__name__)

FALLBACK_ANSWER = "This is a fallback question"
FALLBACK_TEMPLATES = [
    "What is a key concept in {subject}?",
    "Name a famous figure in {subject}",
    "What is an important event in {subject}?",
]


class QuestionSource(Protocol):
    async def generate(self, subject: str, count: int) -> List[Question]:
        ...


def fallback_questions(subject: str, count: int) -> List[Question]:
    """Locally synthesised placeholder questions, repeated to reach ``count``."""
    templates = itertools.cycle(FALLBACK_TEMPLATES)
    return [
        Question(question=next(templates).format(subject=subject), answer=FALLBACK_ANSWER)
        for _ in range(count)
    ]


def pad_questions(questions: List[Question], subject: str, count: int) -> List[Question]:
    """Exactly ``count`` questions: truncate, or pad with fallback questions."""
    if len(questions) >= count:
        return list(questions[:count])
    return list(questions) + fallback_questions(subject, count - len(questions))


class FallbackQuestionSource:
    async def generate(self, subject: str, count: int = 5) -> List[Question]:
        return fallback_questions(subject, count)


async def generate_with_fallback(source: QuestionSource, subject: str, count: int) -> List[Question]:
    """Ask ``source`` for questions; never fails and always returns ``count`` items."""
    try:
        questions = await source.generate(subject, count)
    except QuestionSourceError as e:
        logger.warning("Question source failed for %r (%s), falling back to default questions", subject, e)
        return fallback_questions(subject, count)
    except Exception:
        logger.exception("Unexpected question source error for %r, falling back to default questions", subject)
        return fallback_questions(subject, count)

    if len(questions) < count:
        logger.info("Question source returned %d of %d questions for %r, padding", len(questions), count, subject)
    return pad_questions(questions, subject, count)


def build_question_source(settings: Settings) -> QuestionSource:
    if settings.QUESTION_SOURCE == "openai":
        return ChatGPTQuestionGenerator(
            api_key=settings.OPENAI_API_KEY,
            model=settings.OPENAI_MODEL,
            base_url=settings.OPENAI_BASE_URL,
            timeout=settings.UPSTREAM_TIMEOUT_SEC
        )
    if settings.QUESTION_SOURCE == "opentdb":
        return OpenTriviaQuestionSource(timeout=settings.UPSTREAM_TIMEOUT_SEC)
    return FallbackQuestionSource()
