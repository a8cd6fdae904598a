from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from datetime import datetime, timezone
from pydantic import ValidationError
import json
import logging
from buzzer_quiz.config import get_settings
from buzzer_quiz.schemas.requests import QuestionError, QuestionRequest, QuestionResponse
from buzzer_quiz.utils.chatgpt import ChatGPTQuestionGenerator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["questions"])


async def get_generator() -> ChatGPTQuestionGenerator:
    settings = get_settings()
    return ChatGPTQuestionGenerator(
        api_key=settings.OPENAI_API_KEY,
        model=settings.OPENAI_MODEL,
        base_url=settings.OPENAI_BASE_URL,
        timeout=settings.UPSTREAM_TIMEOUT_SEC
    )


def question_error(details: str) -> JSONResponse:
    body = QuestionError(
        error="Failed to generate questions",
        details=details,
        timestamp=datetime.now(timezone.utc).isoformat()
    )
    return JSONResponse(status_code=500, content=body.model_dump())


@router.post("/questions", response_model=QuestionResponse)
async def generate_questions(
    request: Request,
    generator: ChatGPTQuestionGenerator = Depends(get_generator)
):
    """Generate trivia questions for a subject with the LLM.

    Every failure, from an unreadable request body to unusable model output,
    is answered with a JSON error body rather than an exception.
    """
    try:
        data = QuestionRequest.model_validate(await request.json())
        questions = await generator.generate(data.subject, data.count)
        return QuestionResponse(questions=questions)
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning("Bad question request: %s", e)
        return question_error(str(e))
    except Exception as e:
        logger.exception("Error in question generation")
        return question_error(str(e) or e.__class__.__name__)
