"""
HTTP and WebSocket tests through FastAPI's TestClient.
"""
import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from buzzer_quiz.game_logic import get_engine
from buzzer_quiz.main import app
from buzzer_quiz.routers.game_routes import get_timer_registry
from buzzer_quiz.routers.question_routes import get_generator
from buzzer_quiz.routers.ws_routes import handle_websocket_message
from buzzer_quiz.schemas.game import utcnow
from buzzer_quiz.utils.errors import UpstreamUnavailableError, WriteConflictError, error_body

from conftest import ROOM, StaticQuestionSource


@pytest.fixture()
def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_timer_registry] = lambda: None
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def join(client, name, subject):
    response = client.post(f"/game/{ROOM}/players", json={"name": name, "subject": subject})
    assert response.status_code == 200
    return response.json()["playerId"]


def receive_until(websocket, event_type, predicate=None, limit=20):
    for _ in range(limit):
        message = websocket.receive_json()
        if message["type"] == event_type and (predicate is None or predicate(message["payload"])):
            return message
    raise AssertionError(f"no {event_type} event received")


class TestMeta:
    def test_root_and_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}
        body = client.get("/").json()
        assert body["name"] == "Buzzer Quiz"
        assert body["endpoints"]["default_game"] == "/game/default-game"


class TestGameRoutes:
    def test_create_and_get_game(self, client):
        created = client.post(f"/game/{ROOM}").json()
        assert created["id"] == ROOM
        assert created["status"] == "waiting"
        assert created["currentPlayerIndex"] == 0
        assert created["currentQuestion"] is None

        assert client.post(f"/game/{ROOM}").status_code == 200
        assert client.get(f"/game/{ROOM}").json()["id"] == ROOM

    def test_unknown_game_is_404(self, client):
        response = client.get("/game/missing")
        assert response.status_code == 404
        assert response.json() == {"detail": "Game 'missing' not found", "code": "not_found"}

    def test_error_body_carries_message_and_code(self):
        assert error_body(WriteConflictError("Buzz lost")) == {"detail": "Buzz lost", "code": "write_conflict"}

    def test_join_and_list_players(self, client):
        client.post(f"/game/{ROOM}")
        ann = join(client, "Ann", "Art")
        assert join(client, "Ann", "Art") == ann

        players = client.get(f"/game/{ROOM}/players").json()
        assert [p["id"] for p in players] == [ann]
        assert players[0]["hasBuzzed"] is False
        assert players[0]["gameId"] == ROOM
        assert len(players[0]["questions"]) == 2

    def test_bad_name_is_409(self, client):
        client.post(f"/game/{ROOM}")
        response = client.post(f"/game/{ROOM}/players", json={"name": "  ", "subject": "Art"})
        assert response.status_code == 409
        assert response.json()["code"] == "invalid_state"

    def test_missing_body_field_is_422(self, client):
        client.post(f"/game/{ROOM}")
        assert client.post(f"/game/{ROOM}/players", json={"name": "Ann"}).status_code == 422

    def test_start_without_players_is_409(self, client):
        client.post(f"/game/{ROOM}")
        response = client.post(f"/game/{ROOM}/start")
        assert response.status_code == 409
        assert response.json()["code"] == "invalid_state"

    def test_round_of_play(self, client):
        client.post(f"/game/{ROOM}")
        ann = join(client, "Ann", "Art")
        bo = join(client, "Bo", "Music")

        game = client.post(f"/game/{ROOM}/start").json()
        assert game["status"] == "in_progress"
        assert game["currentQuestion"]["playerId"] == ann
        assert game["currentQuestion"]["timeRemaining"] == 30

        game = client.post(f"/game/{ROOM}/tick").json()
        assert game["currentQuestion"]["timeRemaining"] == 29
        game = client.post(f"/game/{ROOM}/tick", json={"newTimeRemaining": 28}).json()
        assert game["currentQuestion"]["timeRemaining"] == 28

        assert client.post(f"/game/{ROOM}/buzz", json={"playerId": bo}).json() == {"playerId": bo, "won": True}
        assert client.post(f"/game/{ROOM}/buzz", json={"playerId": ann}).json() == {"playerId": ann, "won": False}

        game = client.post(f"/game/{ROOM}/judge", json={"status": "correct"}).json()
        assert game["scores"] == {ann: 0, bo: 10}
        assert game["currentQuestion"]["answerStatus"] == "correct"

        game = client.post(f"/game/{ROOM}/next").json()
        assert game["currentQuestionIndex"] == 1

        client.post(f"/game/{ROOM}/buzz", json={"playerId": bo})
        game = client.post(f"/game/{ROOM}/judge", json={"status": "steal", "stealPlayerId": ann}).json()
        assert game["scores"] == {ann: 15, bo: 10}
        assert game["currentQuestion"]["stealPlayerId"] == ann

        game = client.post(f"/game/{ROOM}/restart").json()
        assert game["status"] == "waiting"
        assert game["scores"] == {ann: 0, bo: 0}

    def test_judge_without_buzz_is_409(self, client):
        client.post(f"/game/{ROOM}")
        join(client, "Ann", "Art")
        client.post(f"/game/{ROOM}/start")
        response = client.post(f"/game/{ROOM}/judge", json={"status": "correct"})
        assert response.status_code == 409

    def test_unknown_judge_status_is_422(self, client):
        client.post(f"/game/{ROOM}")
        assert client.post(f"/game/{ROOM}/judge", json={"status": "maybe"}).status_code == 422

    def test_presence_and_reset_buzzers(self, client):
        client.post(f"/game/{ROOM}")
        ann = join(client, "Ann", "Art")
        client.post(f"/game/{ROOM}/start")
        client.post(f"/game/{ROOM}/buzz", json={"playerId": ann})

        assert client.post(f"/game/{ROOM}/players/{ann}/presence", json={"isOnline": False}).json() == {"ok": True}
        assert client.post(f"/game/{ROOM}/reset-buzzers").json() == {"ok": True}

        [player] = client.get(f"/game/{ROOM}/players").json()
        assert player["isOnline"] is False
        assert player["buzzed"] is False

    def test_presence_of_unknown_player_is_404(self, client):
        client.post(f"/game/{ROOM}")
        response = client.post(f"/game/{ROOM}/players/nobody/presence", json={"isOnline": True})
        assert response.status_code == 404


class FakeGenerator:
    def __init__(self, error=None):
        self.error = error

    async def generate(self, subject, count=5):
        if self.error:
            raise self.error
        return await StaticQuestionSource().generate(subject, count)


class TestQuestionRoutes:
    def test_generates_questions(self, client):
        app.dependency_overrides[get_generator] = lambda: FakeGenerator()
        response = client.post("/api/questions", json={"subject": "Jazz", "count": 2})
        assert response.status_code == 200
        assert response.json()["questions"][1] == {
            "question": "Jazz question 2?", "answer": "Jazz answer 2", "difficulty": "medium"
        }

    def test_invalid_json_body(self, client):
        app.dependency_overrides[get_generator] = lambda: FakeGenerator()
        response = client.post("/api/questions", content="{not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "Failed to generate questions"
        assert body["timestamp"]

    def test_missing_subject(self, client):
        app.dependency_overrides[get_generator] = lambda: FakeGenerator()
        response = client.post("/api/questions", json={"count": 3})
        assert response.status_code == 500
        assert response.json()["error"] == "Failed to generate questions"

    def test_upstream_failure(self, client):
        app.dependency_overrides[get_generator] = lambda: FakeGenerator(UpstreamUnavailableError("OpenAI API error: 503"))
        response = client.post("/api/questions", json={"subject": "Jazz"})
        assert response.status_code == 500
        assert response.json()["details"] == "OpenAI API error: 503"


class TestWebSocket:
    def test_unknown_room_is_refused(self, client):
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect("/ws/game/missing"):
                pass
        assert excinfo.value.code == 4004

    def test_initial_state_and_buzz(self, client):
        client.post(f"/game/{ROOM}")
        ann = join(client, "Ann", "Art")
        client.post(f"/game/{ROOM}/players/{ann}/presence", json={"isOnline": False})
        client.post(f"/game/{ROOM}/start")

        with client.websocket_connect(f"/ws/game/{ROOM}?player_id={ann}") as websocket:
            state = receive_until(websocket, "game_state")
            assert state["payload"]["game"]["status"] == "in_progress"
            players = receive_until(websocket, "players_updated")
            assert players["payload"]["players"][0]["isOnline"] is True

            websocket.send_json({"type": "game_action", "payload": {"action": "buzz"}})
            result = receive_until(websocket, "buzz_result")
            assert result["payload"] == {"playerId": ann, "won": True}

            websocket.send_json({"type": "ping"})
            assert receive_until(websocket, "pong")["type"] == "pong"

            websocket.send_json({"type": "dance"})
            assert "Unknown event type" in receive_until(websocket, "error")["payload"]["error"]

        game = client.get(f"/game/{ROOM}").json()
        assert game["currentQuestion"]["buzzedPlayerId"] == ann

    def test_second_buzz_reports_invalid_state(self, client):
        client.post(f"/game/{ROOM}")
        ann = join(client, "Ann", "Art")
        client.post(f"/game/{ROOM}/start")

        with client.websocket_connect(f"/ws/game/{ROOM}?player_id={ann}") as websocket:
            websocket.send_json({"type": "game_action", "payload": {"action": "buzz"}})
            receive_until(websocket, "buzz_result")
            websocket.send_json({"type": "game_action", "payload": {"action": "buzz"}})
            error = receive_until(websocket, "error")
            assert error["payload"]["code"] == "invalid_state"

    def test_host_screen_sees_broadcasts(self, client):
        client.post(f"/game/{ROOM}")
        join(client, "Ann", "Art")

        with client.websocket_connect(f"/ws/game/{ROOM}") as host:
            receive_until(host, "game_state")
            client.post(f"/game/{ROOM}/start")
            state = receive_until(host, "game_state", lambda payload: payload["game"]["status"] == "in_progress")
            assert state["payload"]["game"]["currentQuestion"]["question"] == "Art question 1?"

            join(client, "Bo", "Music")
            players = receive_until(host, "players_updated", lambda payload: len(payload["players"]) == 2)
            assert [p["name"] for p in players["payload"]["players"]] == ["Ann", "Bo"]

    def test_host_screen_cannot_buzz(self, client):
        client.post(f"/game/{ROOM}")
        join(client, "Ann", "Art")
        client.post(f"/game/{ROOM}/start")

        with client.websocket_connect(f"/ws/game/{ROOM}") as host:
            host.send_json({"type": "game_action", "payload": {"action": "buzz"}})
            assert receive_until(host, "error")["payload"]["error"] == "Only players can buzz"


class RecordingSocket:
    def __init__(self):
        self.sent = []

    async def send_text(self, text):
        self.sent.append(json.loads(text))


class TestPresenceSweep:
    @pytest.mark.asyncio
    async def test_ping_marks_silent_players_offline(self, engine, storage):
        await engine.create_game(ROOM)
        ann = await engine.add_player(ROOM, "Ann", "Art")
        bo = await engine.add_player(ROOM, "Bo", "Music")
        await storage.update_player(bo, {"lastSeen": utcnow() - timedelta(minutes=5)})
        socket = RecordingSocket()

        await handle_websocket_message(socket, engine, ROOM, ann, json.dumps({"type": "ping"}))

        assert [event["type"] for event in socket.sent] == ["pong"]
        assert (await engine.get_player(ROOM, ann)).is_online is True
        assert (await engine.get_player(ROOM, bo)).is_online is False

    @pytest.mark.asyncio
    async def test_ping_keeps_recent_players_online(self, engine):
        await engine.create_game(ROOM)
        ann = await engine.add_player(ROOM, "Ann", "Art")
        bo = await engine.add_player(ROOM, "Bo", "Music")
        socket = RecordingSocket()

        await handle_websocket_message(socket, engine, ROOM, ann, json.dumps({"type": "ping"}))

        assert (await engine.get_player(ROOM, bo)).is_online is True
