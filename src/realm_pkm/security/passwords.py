"""Password hashing with bcrypt.

Hashes are standard ``$2b$<cost>$...`` strings. The cost travels with the
hash, so raising ``bcrypt_rounds`` later keeps stored hashes valid.
"""
import logging
from typing import Optional

import bcrypt

from realm_pkm.config import config

logger = logging.getLogger(__name__)

# bcrypt only reads the first 72 bytes of a password
MAX_PASSWORD_BYTES = 72


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:MAX_PASSWORD_BYTES]


def hash_password(password: str, rounds: Optional[int] = None) -> str:
    """Hash a password with a fresh salt at ``config.bcrypt_rounds`` by default."""
    salt = bcrypt.gensalt(rounds=rounds or config.bcrypt_rounds)
    return bcrypt.hashpw(_encode(password), salt).decode("ascii")


def verify_password(password: str, encoded: str) -> bool:
    """Check a password against a stored hash. Malformed hashes never match."""
    try:
        return bcrypt.checkpw(_encode(password), encoded.encode("ascii"))
    except (AttributeError, UnicodeEncodeError, ValueError):
        logger.warning("Stored password hash has an unexpected format")
        return False
