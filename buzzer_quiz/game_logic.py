import logging
from typing import Any, Dict, List, Optional, Tuple
from buzzer_quiz.config import get_settings
from buzzer_quiz.schemas.game import (
    AnswerStatus, CurrentQuestion, GameState, GameStatus, Player, Question, utcnow
)
from buzzer_quiz.utils.errors import (
    InvalidStateError, NotFoundError, WriteConflictError,
    invalid_name_error, player_not_found_error, room_not_found_error
)
from buzzer_quiz.utils.ids import generate_player_id, validate_name
from buzzer_quiz.utils.questions import QuestionSource, build_question_source, generate_with_fallback
from buzzer_quiz.utils.storage import ArrayUnion, Increment, StorageBackend, get_storage

logger = logging.getLogger(__name__)

QUESTION_TIME_LIMIT = 30
CORRECT_POINTS = 10
INCORRECT_POINTS = -10
STEAL_POINTS = 15


def first_playable(players: List[Player], player_index: int, question_index: int) -> Optional[Tuple[int, int]]:
    """First (player, question) position at or after the given one, or None when exhausted."""
    while player_index < len(players):
        if question_index < len(players[player_index].questions):
            return player_index, question_index
        player_index += 1
        question_index = 0
    return None


def score_change(status: AnswerStatus, buzzed_player_id: str,
                 steal_player_id: Optional[str]) -> Tuple[str, int]:
    """Who gets how many points for a judged answer."""
    if status == AnswerStatus.CORRECT:
        return buzzed_player_id, CORRECT_POINTS
    if status == AnswerStatus.INCORRECT:
        return buzzed_player_id, INCORRECT_POINTS
    if status == AnswerStatus.STEAL and steal_player_id:
        return steal_player_id, STEAL_POINTS
    raise InvalidStateError(f"Cannot score answer status '{status.value}'")


class GameEngine:
    """Turn-based buzzer quiz commands.

    The engine keeps no game state of its own. Each command reads the room
    from storage, works out the next state and writes it back with a guarded
    atomic update, so a command that acted on stale data fails its guard
    instead of overwriting somebody else's write.
    """

    def __init__(self, storage: StorageBackend, question_source: QuestionSource,
                 questions_per_player: int = 5, question_time: int = QUESTION_TIME_LIMIT):
        self.storage = storage
        self.question_source = question_source
        self.questions_per_player = questions_per_player
        self.question_time = question_time

    # ----- reads -----

    async def get_game(self, room_id: str) -> GameState:
        game = await self.storage.get_game(room_id)
        if game is None:
            raise room_not_found_error(room_id)
        return game

    async def get_player(self, room_id: str, player_id: str) -> Player:
        player = await self.storage.get_player(player_id)
        if player is None or player.game_id != room_id:
            raise player_not_found_error(player_id)
        return player

    async def list_players(self, room_id: str) -> List[Player]:
        await self.get_game(room_id)
        return await self.storage.list_players(room_id)

    # ----- lobby -----

    async def create_game(self, room_id: str) -> GameState:
        """Ensure the room exists; creating it twice is a no-op."""
        if await self.storage.create_game(GameState(id=room_id)):
            logger.info("Game %s created", room_id)
        return await self.get_game(room_id)

    async def add_player(self, room_id: str, name: str, subject: str) -> str:
        """Join a player, or reconnect one with the same name and subject. Returns the player id."""
        name, subject = name.strip(), subject.strip()
        if not validate_name(name):
            raise invalid_name_error(name)
        if not validate_name(subject):
            raise invalid_name_error(subject)

        await self.get_game(room_id)

        existing = await self.storage.find_player(room_id, name, subject)
        if existing:
            await self.set_presence(room_id, existing.id, True)
            logger.info("Player %s (%s) reconnected to %s as %s", name, subject, room_id, existing.id)
            return existing.id

        questions = await generate_with_fallback(self.question_source, subject, self.questions_per_player)
        player = Player(id=generate_player_id(), game_id=room_id, name=name, subject=subject,
                        questions=questions)

        batch = self.storage.batch()
        batch.create_player(player)
        batch.update_game(room_id, {
            "players": ArrayUnion([player]),
            f"scores.{player.id}": 0
        })
        try:
            await self.storage.commit(batch)
        except WriteConflictError:
            # a concurrent join with the same identity got there first
            existing = await self.storage.find_player(room_id, name, subject)
            if existing is None:
                raise
            logger.info("Player %s (%s) joined %s concurrently, reusing %s", name, subject, room_id, existing.id)
            return existing.id

        logger.info("Player %s (%s) joined %s as %s", name, subject, room_id, player.id)
        return player.id

    # ----- game flow -----

    async def start_game(self, room_id: str) -> GameState:
        """Move a waiting room into play on the first player's first question."""
        game = await self.get_game(room_id)
        if game.status != GameStatus.WAITING:
            raise InvalidStateError(f"Game {room_id} is {game.status.value}, not waiting")
        if not game.players:
            raise InvalidStateError("No players in game")

        position = first_playable(game.players, 0, 0)
        if position is None:
            raise InvalidStateError("No player has any questions")
        player_index, question_index = position

        await self.storage.update_game(room_id, {
            "status": GameStatus.IN_PROGRESS,
            "currentPlayerIndex": player_index,
            "currentQuestionIndex": question_index,
            "currentQuestion": self._current_question(game.players[player_index], question_index)
        }, expected={"status": GameStatus.WAITING})

        logger.info("Game %s started with %d players", room_id, len(game.players))
        return await self.get_game(room_id)

    async def tick(self, room_id: str, new_time_remaining: Optional[int] = None) -> GameState:
        """Take one second off the clock, or move on when it runs out.

        Ignored while a buzz is pending, after the question was judged, or when
        ``new_time_remaining`` shows the caller worked from an outdated clock.
        """
        game = await self.get_game(room_id)
        current = game.current_question
        if game.status != GameStatus.IN_PROGRESS or current is None or not current.is_open:
            return game

        remaining = current.time_remaining - 1
        if new_time_remaining is not None and new_time_remaining != remaining:
            logger.debug("Stale tick for %s: %s != %s", room_id, new_time_remaining, remaining)
            return game

        guard = self._question_guard(game)
        guard.update({
            "currentQuestion.buzzedPlayerId": None,
            "currentQuestion.answerStatus": None,
            "currentQuestion.timeRemaining": current.time_remaining
        })

        if remaining <= 0:
            logger.info("Time is up on %s question %d/%d", room_id,
                        game.current_player_index, game.current_question_index)
            return await self._advance(game, guard)

        try:
            await self.storage.update_game(room_id, {"currentQuestion.timeRemaining": remaining}, expected=guard)
        except WriteConflictError as e:
            logger.debug("Tick lost to a concurrent write on %s: %s", room_id, e)
        return await self.get_game(room_id)

    async def buzz(self, room_id: str, player_id: str) -> bool:
        """Claim the current question. Returns False when another player was first."""
        game = await self.get_game(room_id)
        player = await self.get_player(room_id, player_id)

        current = game.current_question
        if game.status != GameStatus.IN_PROGRESS or current is None:
            raise InvalidStateError("No active question")
        if player.has_buzzed:
            raise InvalidStateError(f"Player {player_id} already buzzed on this question")
        if current.buzzed_player_id is not None:
            logger.info("Buzz from %s too late, %s already buzzed", player_id, current.buzzed_player_id)
            return False

        guard = self._question_guard(game)
        guard["currentQuestion.buzzedPlayerId"] = None

        batch = self.storage.batch()
        batch.update_game(room_id, {
            "currentQuestion.buzzedPlayerId": player_id,
            "currentQuestion.answerStatus": AnswerStatus.PENDING
        }, expected=guard)
        batch.update_player(player_id, {
            "buzzed": True,
            "hasBuzzed": True,
            "isOnline": True,
            "lastSeen": utcnow()
        }, expected={"hasBuzzed": False})
        try:
            await self.storage.commit(batch)
        except WriteConflictError as e:
            logger.info("Buzz from %s lost the race on %s: %s", player_id, room_id, e)
            return False

        logger.info("Player %s buzzed in on %s", player_id, room_id)
        return True

    async def judge_answer(self, room_id: str, status: AnswerStatus,
                           steal_player_id: Optional[str] = None) -> GameState:
        """Resolve the pending buzz and score it.

        Does not advance; the host follows up with ``next_question``.
        """
        status = AnswerStatus(status)
        game = await self.get_game(room_id)
        current = game.current_question
        if current is None or current.buzzed_player_id is None or current.answer_status != AnswerStatus.PENDING:
            raise InvalidStateError("No player has buzzed in")
        if status == AnswerStatus.PENDING:
            raise InvalidStateError("Answer status must be correct, incorrect or steal")
        if status == AnswerStatus.STEAL:
            if not steal_player_id:
                raise InvalidStateError("A steal needs the stealing player")
            if game.player_by_id(steal_player_id) is None:
                raise player_not_found_error(steal_player_id)

        buzzed_player_id = current.buzzed_player_id
        scored_player_id, points = score_change(status, buzzed_player_id, steal_player_id)

        fields: Dict[str, Any] = {
            "currentQuestion.answerStatus": status,
            "currentQuestion.buzzedPlayerId": None,
            f"scores.{scored_player_id}": Increment(points)
        }
        if status == AnswerStatus.STEAL:
            fields["currentQuestion.stealPlayerId"] = steal_player_id
        guard = self._question_guard(game)
        guard.update({
            "currentQuestion.buzzedPlayerId": buzzed_player_id,
            "currentQuestion.answerStatus": AnswerStatus.PENDING
        })

        batch = self.storage.batch()
        batch.update_game(room_id, fields, expected=guard)
        for player in await self.storage.list_players(room_id):
            player_fields: Dict[str, Any] = {"buzzed": False, "hasBuzzed": False}
            if player.id == scored_player_id:
                player_fields["score"] = Increment(points)
            batch.update_player(player.id, player_fields)
        await self.storage.commit(batch)

        logger.info("Answer on %s judged %s: %s %+d", room_id, status.value, scored_player_id, points)
        return await self.get_game(room_id)

    async def next_question(self, room_id: str) -> GameState:
        """Advance to the next question, the next player, or the end of the game."""
        game = await self.get_game(room_id)
        if game.status == GameStatus.FINISHED:
            return game
        if game.status != GameStatus.IN_PROGRESS:
            raise InvalidStateError(f"Game {room_id} has not started")
        return await self._advance(game)

    async def reset_buzzers(self, room_id: str) -> None:
        """Host override: clear every player's buzzed light."""
        await self.get_game(room_id)
        batch = self.storage.batch()
        for player in await self.storage.list_players(room_id):
            batch.update_player(player.id, {"buzzed": False})
        if len(batch):
            await self.storage.commit(batch)

    async def restart_game(self, room_id: str) -> GameState:
        """Back to waiting with zeroed scores; players and their questions stay."""
        game = await self.get_game(room_id)
        players = await self.storage.list_players(room_id)

        fields: Dict[str, Any] = {
            "status": GameStatus.WAITING,
            "currentQuestion": None,
            "currentPlayerIndex": 0,
            "currentQuestionIndex": 0
        }
        for player_id in set(game.scores) | {p.id for p in game.players} | {p.id for p in players}:
            fields[f"scores.{player_id}"] = 0

        batch = self.storage.batch()
        batch.update_game(room_id, fields)
        for player in players:
            batch.update_player(player.id, {"score": 0, "buzzed": False, "hasBuzzed": False})
        await self.storage.commit(batch)

        logger.info("Game %s restarted", room_id)
        return await self.get_game(room_id)

    # ----- presence -----

    async def set_presence(self, room_id: str, player_id: str, is_online: bool) -> None:
        await self.get_player(room_id, player_id)
        await self.storage.update_player(player_id, {"isOnline": is_online, "lastSeen": utcnow()})

    async def mark_idle_players_offline(self, room_id: str, max_idle_seconds: float) -> List[str]:
        """Flag players not seen for ``max_idle_seconds`` as offline. Returns their ids."""
        now = utcnow()
        idle = [
            player for player in await self.list_players(room_id)
            if player.is_online and player.is_idle(max_idle_seconds, now)
        ]
        if idle:
            batch = self.storage.batch()
            for player in idle:
                batch.update_player(player.id, {"isOnline": False}, expected={"lastSeen": player.last_seen})
            try:
                await self.storage.commit(batch)
            except WriteConflictError:
                # someone came back while we looked; the next sweep catches the rest
                return []
        return [player.id for player in idle]

    # ----- helpers -----

    def _current_question(self, player: Player, question_index: int) -> CurrentQuestion:
        question: Question = player.questions[question_index]
        return CurrentQuestion(
            question=question.question,
            answer=question.answer,
            player_id=player.id,
            time_remaining=self.question_time
        )

    @staticmethod
    def _question_guard(game: GameState) -> Dict[str, Any]:
        """Preconditions pinning the write to the question that was read."""
        return {
            "status": GameStatus.IN_PROGRESS,
            "currentPlayerIndex": game.current_player_index,
            "currentQuestionIndex": game.current_question_index,
            "currentQuestion.playerId": game.current_question.player_id if game.current_question else None
        }

    async def _advance(self, game: GameState, guard: Optional[Dict[str, Any]] = None) -> GameState:
        position = first_playable(game.players, game.current_player_index, game.current_question_index + 1)
        if position is None:
            fields: Dict[str, Any] = {"status": GameStatus.FINISHED, "currentQuestion": None}
        else:
            player_index, question_index = position
            fields = {
                "currentPlayerIndex": player_index,
                "currentQuestionIndex": question_index,
                "currentQuestion": self._current_question(game.players[player_index], question_index)
            }

        batch = self.storage.batch()
        batch.update_game(game.id, fields, expected=guard or self._question_guard(game))
        # buzzer flags belong to one question
        for player in await self.storage.list_players(game.id):
            batch.update_player(player.id, {"buzzed": False, "hasBuzzed": False})
        try:
            await self.storage.commit(batch)
        except WriteConflictError as e:
            # somebody else already moved the game on
            logger.info("Advance on %s skipped: %s", game.id, e)
            return await self.get_game(game.id)

        if position is None:
            logger.info("Game %s finished, all questions asked", game.id)
        return await self.get_game(game.id)


# Global engine instance
engine: Optional[GameEngine] = None


async def get_engine() -> GameEngine:
    """Get the process game engine, built on first use."""
    global engine
    if engine is None:
        settings = get_settings()
        engine = GameEngine(
            storage=await get_storage(),
            question_source=build_question_source(settings),
            questions_per_player=settings.QUESTIONS_PER_PLAYER,
            question_time=settings.QUESTION_TIME_SEC
        )
    return engine
