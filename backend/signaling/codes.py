"""Short, human-typeable pairing codes."""

import secrets

from config import CODE_ALPHABET, CODE_LENGTH
from exceptions import InvalidPairingCode


def generate_code(length: int = CODE_LENGTH) -> str:
    """Return a random uppercase base-36 code.

    Uniqueness is not guaranteed here; the mailbox decides whether a
    code is already in use.
    """
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str, length: int = CODE_LENGTH) -> str:
    """Uppercase and validate a user-entered code.

    Raises InvalidPairingCode on a wrong length or a character outside
    the alphabet, so malformed keys never reach the store.
    """
    if not isinstance(code, str):
        raise InvalidPairingCode("Pairing code must be a string")
    normalized = code.strip().upper()
    if len(normalized) != length:
        raise InvalidPairingCode(
            f"Pairing code must be {length} characters, got {len(normalized)}"
        )
    bad = sorted({ch for ch in normalized if ch not in CODE_ALPHABET})
    if bad:
        raise InvalidPairingCode(
            f"Pairing code contains invalid characters: {''.join(bad)}"
        )
    return normalized
