import asyncio
import logging
from typing import Dict, Optional, Tuple
from buzzer_quiz.config import get_settings
from buzzer_quiz.game_logic import GameEngine
from buzzer_quiz.schemas.game import GameState, GameStatus

logger = logging.getLogger(__name__)

QuestionKey = Tuple[int, int, str]


def clock_key(game: GameState) -> Optional[QuestionKey]:
    """Identity of the question whose clock should be running, or None if no clock should run."""
    current = game.current_question
    if game.status != GameStatus.IN_PROGRESS or current is None or not current.is_open:
        return None
    return game.current_player_index, game.current_question_index, current.player_id


class QuestionTimer:
    """Countdown for one room, driven from this process.

    Follows the room's game document: whenever the running question or the
    game status changes the old loop is cancelled and, if the new state has an
    open question, a new one is armed. At most one loop runs at a time.
    """

    def __init__(self, room_id: str, engine: GameEngine, interval: float = 1.0):
        self.room_id = room_id
        self.engine = engine
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._armed_for: Optional[QuestionKey] = None
        self._unsubscribe = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.engine.storage.subscribe_game(self.room_id, self.on_game_update)
        self.on_game_update(await self.engine.get_game(self.room_id))

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        task = self._task
        self._cancel()
        self._armed_for = None
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass

    def on_game_update(self, game: GameState) -> None:
        key = clock_key(game)
        if key is None:
            if self._armed_for is not None:
                logger.debug("Clock for %s stopped", self.room_id)
            self._cancel()
            self._armed_for = None
            return
        if key == self._armed_for and self.running:
            return
        self._arm(key)

    def _arm(self, key: QuestionKey) -> None:
        self._cancel()
        self._armed_for = key
        self._task = asyncio.create_task(self._run())
        logger.debug("Clock for %s armed on %s", self.room_id, key)

    def _cancel(self) -> None:
        task, self._task = self._task, None
        # a loop that triggered this change itself notices it was replaced and returns
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        me = asyncio.current_task()
        try:
            while self._task is me:
                await asyncio.sleep(self.interval)
                if self._task is not me:
                    break
                game = await self.engine.tick(self.room_id)
                # expired or moved on; the change feed arms the next clock
                if clock_key(game) != self._armed_for:
                    break
        except Exception:
            logger.exception("Clock for %s stopped on error", self.room_id)
        finally:
            if self._task is me:
                self._task = None
                self._armed_for = None


class TimerRegistry:
    """Per-room question timers owned by this process."""

    def __init__(self, interval: float = 1.0):
        self.interval = interval
        self._timers: Dict[str, QuestionTimer] = {}

    async def ensure(self, room_id: str, engine: GameEngine) -> QuestionTimer:
        timer = self._timers.get(room_id)
        if timer is None:
            timer = QuestionTimer(room_id, engine, self.interval)
            self._timers[room_id] = timer
            logger.info("Question timer attached to %s", room_id)
        await timer.start()
        return timer

    async def stop(self, room_id: str) -> None:
        timer = self._timers.pop(room_id, None)
        if timer is not None:
            await timer.stop()

    async def shutdown(self) -> None:
        for room_id in list(self._timers):
            await self.stop(room_id)


# Global timer registry
timers: Optional[TimerRegistry] = None


def get_timers() -> TimerRegistry:
    global timers
    if timers is None:
        timers = TimerRegistry(get_settings().TICK_INTERVAL_SEC)
    return timers
