"""
Tests for the per-room question countdown.
"""
import asyncio
import logging

import pytest

from buzzer_quiz.game_logic import GameEngine
from buzzer_quiz.game_timer import QuestionTimer, TimerRegistry, clock_key
from buzzer_quiz.schemas.game import AnswerStatus, CurrentQuestion, GameState, GameStatus

from conftest import ROOM, wait_until

INTERVAL = 0.01


async def running_game(engine, *people):
    await engine.create_game(ROOM)
    ids = [await engine.add_player(ROOM, name, subject) for name, subject in people]
    await engine.start_game(ROOM)
    return ids


async def time_left(engine):
    game = await engine.get_game(ROOM)
    return game.current_question.time_remaining if game.current_question else None


def test_clock_key():
    question = CurrentQuestion(question="Q?", answer="A", player_id="p1")
    game = GameState(id=ROOM, status=GameStatus.IN_PROGRESS, current_question=question,
                     current_player_index=1, current_question_index=2)
    assert clock_key(game) == (1, 2, "p1")

    assert clock_key(game.model_copy(update={"status": GameStatus.WAITING})) is None
    buzzed = question.model_copy(update={"buzzed_player_id": "p2", "answer_status": AnswerStatus.PENDING})
    assert clock_key(game.model_copy(update={"current_question": buzzed})) is None
    assert clock_key(GameState(id=ROOM, status=GameStatus.IN_PROGRESS)) is None


@pytest.mark.asyncio
async def test_countdown_runs_game_to_the_end(storage, question_source):
    engine = GameEngine(storage, question_source, questions_per_player=1, question_time=2)
    await running_game(engine, ("Ann", "Art"), ("Bo", "Music"))
    timer = QuestionTimer(ROOM, engine, INTERVAL)
    try:
        await timer.start()

        async def finished():
            return (await engine.get_game(ROOM)).status == GameStatus.FINISHED

        async def idle():
            return not timer.running

        assert await wait_until(finished)
        assert await wait_until(idle)
    finally:
        await timer.stop()


@pytest.mark.asyncio
async def test_one_loop_across_ticks(engine):
    await running_game(engine, ("Ann", "Art"))
    timer = QuestionTimer(ROOM, engine, INTERVAL)
    try:
        await timer.start()
        task = timer._task
        assert task is not None

        async def ticked():
            return await time_left(engine) <= 27

        assert await wait_until(ticked)
        assert timer._task is task
    finally:
        await timer.stop()


@pytest.mark.asyncio
async def test_clock_freezes_on_buzz_and_rearms_on_next(engine):
    [ann] = await running_game(engine, ("Ann", "Art"))
    timer = QuestionTimer(ROOM, engine, INTERVAL)
    try:
        await timer.start()

        async def ticked():
            return await time_left(engine) <= 28

        assert await wait_until(ticked)
        assert await engine.buzz(ROOM, ann) is True
        await engine.storage.flush()
        assert not timer.running

        frozen = await time_left(engine)
        await asyncio.sleep(INTERVAL * 10)
        assert await time_left(engine) == frozen

        await engine.judge_answer(ROOM, AnswerStatus.CORRECT)
        await asyncio.sleep(INTERVAL * 5)
        assert await time_left(engine) == frozen

        game = await engine.next_question(ROOM)
        assert game.current_question_index == 1
        await engine.storage.flush()
        assert timer.running

        assert await wait_until(ticked)
    finally:
        await timer.stop()


@pytest.mark.asyncio
async def test_stop_halts_the_clock(engine):
    await running_game(engine, ("Ann", "Art"))
    timer = QuestionTimer(ROOM, engine, INTERVAL)
    await timer.start()

    async def ticked():
        return await time_left(engine) <= 29

    assert await wait_until(ticked)
    await timer.stop()
    assert not timer.running

    stopped_at = await time_left(engine)
    await asyncio.sleep(INTERVAL * 10)
    assert await time_left(engine) == stopped_at


@pytest.mark.asyncio
async def test_no_clock_before_start(engine):
    await engine.create_game(ROOM)
    await engine.add_player(ROOM, "Ann", "Art")
    timer = QuestionTimer(ROOM, engine, INTERVAL)
    try:
        await timer.start()
        assert not timer.running

        await engine.start_game(ROOM)
        await engine.storage.flush()
        assert timer.running
    finally:
        await timer.stop()


@pytest.mark.asyncio
async def test_registry_reuses_room_timer(engine):
    await running_game(engine, ("Ann", "Art"))
    registry = TimerRegistry(INTERVAL)
    try:
        first = await registry.ensure(ROOM, engine)
        second = await registry.ensure(ROOM, engine)
        assert first is second
        assert first.running
    finally:
        await registry.shutdown()

    assert not first.running
    stopped_at = await time_left(engine)
    await asyncio.sleep(INTERVAL * 10)
    assert await time_left(engine) == stopped_at


class ExplodingEngine(GameEngine):
    async def tick(self, room_id, new_time_remaining=None):
        raise RuntimeError("store exploded")


@pytest.mark.asyncio
async def test_unexpected_error_stops_clock_with_log(storage, question_source, caplog):
    engine = ExplodingEngine(storage, question_source, questions_per_player=1)
    await running_game(engine, ("Ann", "Art"))
    timer = QuestionTimer(ROOM, engine, INTERVAL)
    try:
        with caplog.at_level(logging.ERROR, logger="buzzer_quiz.game_timer"):
            await timer.start()

            async def idle():
                return not timer.running

            assert await wait_until(idle)
        assert f"Clock for {ROOM} stopped on error" in caplog.text
        assert "store exploded" in caplog.text
    finally:
        await timer.stop()
