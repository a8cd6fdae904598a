class GameError(Exception):
    """Base class for errors raised by the game engine and its collaborators."""
    code = "game_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(GameError):
    """Referenced room or player document does not exist."""
    code = "not_found"
    status_code = 404


class InvalidStateError(GameError):
    """Command issued while its preconditions do not hold."""
    code = "invalid_state"
    status_code = 409


class WriteConflictError(GameError):
    """A conditional write's precondition no longer held at commit time."""
    code = "write_conflict"
    status_code = 409


class QuestionSourceError(GameError):
    code = "question_source_error"
    status_code = 502


class UpstreamUnavailableError(QuestionSourceError):
    """Question generation call failed or timed out."""
    code = "upstream_unavailable"


class MalformedUpstreamResponseError(QuestionSourceError):
    """Question generation returned non-JSON or schema-violating content."""
    code = "malformed_upstream_response"


def room_not_found_error(room_id: str) -> NotFoundError:
    return NotFoundError(f"Game '{room_id}' not found")


def player_not_found_error(player_id: str) -> NotFoundError:
    return NotFoundError(f"Player '{player_id}' not found")


def invalid_name_error(name: str) -> InvalidStateError:
    return InvalidStateError(f"Invalid name: '{name}'")


def error_body(exc: GameError) -> dict:
    """JSON body for a domain error: the message and a stable code."""
    return {"detail": exc.message, "code": exc.code}
