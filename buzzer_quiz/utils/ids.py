import random
import string

PLAYER_ID_LENGTH = 20
MAX_NAME_LENGTH = 40


def generate_player_id() -> str:
    """Generate a unique player ID."""
    return ''.join(random.choices(string.ascii_letters + string.digits, k=PLAYER_ID_LENGTH))


def validate_name(name: str) -> bool:
    """Validate player name or subject."""
    if not name or len(name.strip()) == 0:
        return False
    return len(name) <= MAX_NAME_LENGTH
