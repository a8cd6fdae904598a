import asyncio
import aiohttp
import json
import logging
import re
from typing import Any, List, Optional
from buzzer_quiz.schemas.game import Question
from buzzer_quiz.utils.errors import MalformedUpstreamResponseError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1/chat/completions"
DIFFICULTIES = ("medium", "hard")

SYSTEM_PROMPT = (
    "You are a trivia question generator. Generate high-quality, challenging trivia questions. "
    "Return ONLY a JSON array of questions, no other text."
)

_FENCE_START = re.compile(r"^```(?:json)?\s*\n?", re.IGNORECASE)
_FENCE_END = re.compile(r"\n?\s*```$")


def build_prompt(subject: str, count: int) -> str:
    return f"""Generate {count} trivia questions about {subject}.
Requirements:
- Questions should be challenging but fair
- All questions should be medium to hard difficulty
- Questions should be specific to {subject}
- Include one correct answer for each question
- Format as JSON array with question, answer, and difficulty fields
- Difficulty should be either 'medium' or 'hard'
- Return ONLY the JSON array, no other text

Example format:
[
  {{
    "question": "What is the name of the process by which plants convert light energy into chemical energy?",
    "answer": "Photosynthesis",
    "difficulty": "medium"
  }}
]"""


def clean_response(content: str) -> str:
    """Strip whitespace and a surrounding markdown code fence from model output."""
    cleaned = content.strip()
    cleaned = _FENCE_START.sub("", cleaned)
    cleaned = _FENCE_END.sub("", cleaned)
    return cleaned.strip()


def parse_questions(content: str) -> List[Question]:
    """Parse model output into questions.

    Accepts a bare JSON array or an object with a ``questions`` array. Items
    must carry non-empty ``question`` and ``answer`` strings; difficulty is
    normalised to medium or hard.
    """
    if not isinstance(content, str):
        raise MalformedUpstreamResponseError(f"OpenAI response content is not text: {type(content).__name__}")
    try:
        parsed: Any = json.loads(clean_response(content))
    except json.JSONDecodeError as e:
        raise MalformedUpstreamResponseError(f"Failed to parse questions from OpenAI response: {e}") from e

    items = parsed.get("questions") if isinstance(parsed, dict) else parsed
    if not isinstance(items, list):
        raise MalformedUpstreamResponseError("OpenAI response does not contain a list of questions")

    questions = []
    for item in items:
        if not isinstance(item, dict):
            raise MalformedUpstreamResponseError(f"Question entry is not an object: {item!r}")
        question, answer = item.get("question"), item.get("answer")
        if not isinstance(question, str) or not question.strip():
            raise MalformedUpstreamResponseError(f"Question entry without question text: {item!r}")
        if answer is None or not str(answer).strip():
            raise MalformedUpstreamResponseError(f"Question entry without answer: {item!r}")
        difficulty = item.get("difficulty")
        questions.append(Question(
            question=question.strip(),
            answer=str(answer).strip(),
            difficulty=difficulty if difficulty in DIFFICULTIES else "medium"
        ))
    return questions


class ChatGPTQuestionGenerator:
    def __init__(self, api_key: Optional[str] = None, model: str = "gpt-4",
                 base_url: str = DEFAULT_BASE_URL, timeout: float = 20.0):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout

    async def generate(self, subject: str, count: int = 5) -> List[Question]:
        """Generate ``count`` trivia questions about ``subject``."""
        if not self.api_key:
            raise UpstreamUnavailableError("OpenAI API key not configured")

        logger.info("Generating %d questions for subject: %s", count, subject)
        content = await self._request_completion(build_prompt(subject, count))
        questions = parse_questions(content)
        logger.info("Generated %d questions for %s", len(questions), subject)
        return questions

    async def _request_completion(self, prompt: str) -> str:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt}
            ],
            "temperature": 0.7
        }

        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.base_url, headers=headers, json=payload) as response:
                    if response.status != 200:
                        body = await response.text()
                        logger.error("OpenAI API error %s: %s", response.status, body[:200])
                        raise UpstreamUnavailableError(f"OpenAI API error: {response.status}")
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamUnavailableError(f"OpenAI request failed: {e!r}") from e
        except ValueError as e:
            # 200 with a body that is not JSON
            raise MalformedUpstreamResponseError(f"OpenAI response is not JSON: {e}") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise MalformedUpstreamResponseError("Unexpected OpenAI response shape") from e
        if not content or not isinstance(content, str):
            raise MalformedUpstreamResponseError("No response content from OpenAI")
        return content
