import asyncio
import aiohttp
import html
import logging
from typing import Any, Dict, List, Tuple
from buzzer_quiz.schemas.game import Question
from buzzer_quiz.utils.errors import MalformedUpstreamResponseError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

OPEN_TRIVIA_API = "https://opentdb.com/api.php"
GENERAL_KNOWLEDGE = 9

# Subject keyword -> Open Trivia DB category id
CATEGORY_MAP: Dict[str, int] = {
    # Science
    "physics": 17,
    "chemistry": 17,
    "biology": 17,
    "astronomy": 17,
    "science": 17,
    # History
    "ancient history": 23,
    "modern history": 23,
    "world history": 23,
    "history": 23,
    # Geography
    "geography": 22,
    "countries": 22,
    "capitals": 22,
    "landmarks": 22,
    # Entertainment
    "movies": 11,
    "film": 11,
    "cinema": 11,
    "television": 14,
    "tv": 14,
    "music": 12,
    "books": 10,
    "literature": 10,
    "art": 25,
    "painting": 25,
    "sculpture": 25,
    # Sports
    "sports": 21,
    "football": 21,
    "basketball": 21,
    "baseball": 21,
    "soccer": 21,
    # Other
    "politics": 24,
    "mythology": 20,
    "animals": 27,
    "video games": 15,
    "gaming": 15,
}


def match_category(subject: str) -> Tuple[int, str]:
    """Category id for the longest keyword contained in the subject, and that keyword."""
    normalized = subject.lower()
    category, best = GENERAL_KNOWLEDGE, ""
    for keyword, category_id in CATEGORY_MAP.items():
        if keyword in normalized and len(keyword) > len(best):
            category, best = category_id, keyword
    return category, best


def select_questions(results: List[Dict[str, Any]], keyword: str) -> List[Question]:
    """Keep medium/hard results that mention the matched keyword."""
    selected = []
    for item in results:
        if not isinstance(item, dict) or item.get("difficulty") not in ("medium", "hard"):
            continue
        question, answer = item.get("question"), item.get("correct_answer")
        if not isinstance(question, str) or not isinstance(answer, str):
            continue
        question, answer = html.unescape(question), html.unescape(answer)
        if keyword not in question.lower() and keyword not in answer.lower():
            continue
        selected.append(Question(question=question, answer=answer, difficulty=item["difficulty"]))
    return selected


class OpenTriviaQuestionSource:
    def __init__(self, base_url: str = OPEN_TRIVIA_API, timeout: float = 20.0):
        self.base_url = base_url
        self.timeout = timeout

    async def generate(self, subject: str, count: int = 5) -> List[Question]:
        category, keyword = match_category(subject)
        # over-fetch, the difficulty and relevance filters drop most results
        params = {"amount": count * 3, "category": category, "type": "multiple"}

        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.base_url, params=params) as response:
                    if response.status != 200:
                        raise UpstreamUnavailableError(f"Open Trivia DB error: {response.status}")
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamUnavailableError(f"Open Trivia DB request failed: {e!r}") from e
        except ValueError as e:
            raise MalformedUpstreamResponseError(f"Open Trivia DB response is not JSON: {e}") from e

        if not isinstance(data, dict) or data.get("response_code") != 0:
            raise MalformedUpstreamResponseError("Invalid response from trivia API")
        results = data.get("results")
        if not isinstance(results, list):
            raise MalformedUpstreamResponseError("Trivia API response has no results list")

        questions = select_questions(results, keyword)
        logger.info("Open Trivia DB gave %d usable questions for %s", len(questions), subject)
        return questions[:count]
