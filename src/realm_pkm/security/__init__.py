"""Password hashing and token issuing."""

from realm_pkm.security.passwords import hash_password, verify_password
from realm_pkm.security.tokens import JwtTokenProvider

__all__ = ["hash_password", "verify_password", "JwtTokenProvider"]
