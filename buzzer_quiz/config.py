import logging
import os
from functools import lru_cache
from typing import Optional

logger = logging.getLogger(__name__)

QUESTION_SOURCES = ("openai", "opentdb", "fallback")


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    def __init__(self):
        self.OPENAI_API_KEY: Optional[str] = os.environ.get('OPENAI_API_KEY') or None
        self.OPENAI_MODEL = os.environ.get('OPENAI_MODEL', 'gpt-4')
        self.OPENAI_BASE_URL = os.environ.get('OPENAI_BASE_URL', 'https://api.openai.com/v1/chat/completions')
        # Where player question sets come from: openai | opentdb | fallback
        self.QUESTION_SOURCE = os.environ.get('QUESTION_SOURCE', 'openai').strip().lower()
        self.QUESTIONS_PER_PLAYER = int(os.environ.get('QUESTIONS_PER_PLAYER', '5'))
        # Countdown per question (seconds) and the tick cadence
        self.QUESTION_TIME_SEC = int(os.environ.get('QUESTION_TIME_SEC', '30'))
        self.TICK_INTERVAL_SEC = float(os.environ.get('TICK_INTERVAL_SEC', '1.0'))
        self.UPSTREAM_TIMEOUT_SEC = float(os.environ.get('UPSTREAM_TIMEOUT_SEC', '20'))
        # Run the countdown in this process (host-of-record)
        self.SERVER_TIMER_ENABLED = _env_bool('SERVER_TIMER_ENABLED', True)
        # Players silent for this long are marked offline by the next ping in their room
        self.PRESENCE_TIMEOUT_SEC = float(os.environ.get('PRESENCE_TIMEOUT_SEC', '60'))
        self.DEFAULT_ROOM_ID = os.environ.get('DEFAULT_ROOM_ID', 'default-game')
        self.LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    def report_problems(self) -> None:
        """Log configuration that will force the service onto a degraded path."""
        if self.QUESTION_SOURCE not in QUESTION_SOURCES:
            logger.error("Unknown QUESTION_SOURCE %r, using local fallback questions", self.QUESTION_SOURCE)
        if self.QUESTION_SOURCE == "openai" and not self.OPENAI_API_KEY:
            logger.warning("OPENAI_API_KEY is not set; players will get fallback questions")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
