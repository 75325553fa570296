"""JWT access and refresh tokens (HS256, via PyJWT)."""
import datetime
import logging
from typing import Any, Dict, Optional

import jwt

from realm_pkm.config import MIN_SECRET_BYTES, config
from realm_pkm.models.schema import utc_now

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ACCESS_AUDIENCE = "realm-user"
REFRESH_AUDIENCE = "realm-refresh"
REFRESH_TOKEN_TYPE = "refresh"
# Refresh tokens live this many times longer than access tokens
REFRESH_LIFETIME_FACTOR = 7


class JwtTokenProvider:
    """Issues and inspects signed session tokens.

    The subject of every token is the user's email. Access and refresh
    tokens use different audiences, so one can never be accepted in place
    of the other.
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        expiration_ms: Optional[int] = None,
        issuer: Optional[str] = None,
    ):
        self._secret = secret if secret is not None else config.jwt_secret
        self.expiration_ms = (
            expiration_ms if expiration_ms is not None else config.jwt_expiration_ms
        )
        self.issuer = issuer or config.jwt_issuer
        if len(self._secret.encode("utf-8")) < MIN_SECRET_BYTES:
            logger.warning(
                "JWT secret is shorter than %d bytes; tokens are easier to forge",
                MIN_SECRET_BYTES,
            )

    @property
    def refresh_expiration_ms(self) -> int:
        return self.expiration_ms * REFRESH_LIFETIME_FACTOR

    def _encode(self, subject: str, audience: str, lifetime_ms: int,
                extra: Optional[Dict[str, Any]] = None) -> str:
        now = utc_now()
        claims: Dict[str, Any] = {
            "sub": subject,
            "iss": self.issuer,
            "aud": audience,
            "iat": now,
            "exp": now + datetime.timedelta(milliseconds=lifetime_ms),
        }
        if extra:
            claims.update(extra)
        return jwt.encode(claims, self._secret, algorithm=ALGORITHM)

    def generate_token(self, email: str) -> str:
        """Issue an access token for the user with this email."""
        return self._encode(email, ACCESS_AUDIENCE, self.expiration_ms)

    def generate_refresh_token(self, email: str) -> str:
        return self._encode(
            email,
            REFRESH_AUDIENCE,
            self.refresh_expiration_ms,
            extra={"type": REFRESH_TOKEN_TYPE},
        )

    def _decode(self, token: str, verify_exp: bool = True) -> Dict[str, Any]:
        """Decode and verify a token of either audience.

        Raises:
            jwt.InvalidTokenError: For bad signatures, issuers or audiences,
                and for expired tokens when verify_exp is set.
        """
        return jwt.decode(
            token,
            self._secret,
            algorithms=[ALGORITHM],
            audience=[ACCESS_AUDIENCE, REFRESH_AUDIENCE],
            issuer=self.issuer,
            options={"verify_exp": verify_exp, "require": ["sub", "exp", "iat"]},
        )

    def get_claims(self, token: str) -> Optional[Dict[str, Any]]:
        """Verified claims, or None for any invalid or expired token."""
        try:
            return self._decode(token)
        except jwt.InvalidTokenError as e:
            logger.debug(f"Rejected token: {e.__class__.__name__}")
            return None

    def _get_unverified_expiry_claims(self, token: str) -> Optional[Dict[str, Any]]:
        """Signature-checked claims that may be expired."""
        try:
            return self._decode(token, verify_exp=False)
        except jwt.InvalidTokenError:
            return None

    def validate_token(self, token: str) -> bool:
        return self.get_claims(token) is not None

    def get_username(self, token: str) -> Optional[str]:
        """The token subject (email), or None when the token is invalid."""
        claims = self.get_claims(token)
        return claims.get("sub") if claims else None

    def is_refresh_token(self, token: str) -> bool:
        claims = self.get_claims(token)
        return bool(claims) and claims.get("type") == REFRESH_TOKEN_TYPE

    def get_expiration(self, token: str) -> Optional[datetime.datetime]:
        claims = self._get_unverified_expiry_claims(token)
        if not claims:
            return None
        return datetime.datetime.fromtimestamp(claims["exp"], tz=datetime.timezone.utc)

    def get_issued_at(self, token: str) -> Optional[datetime.datetime]:
        claims = self._get_unverified_expiry_claims(token)
        if not claims:
            return None
        return datetime.datetime.fromtimestamp(claims["iat"], tz=datetime.timezone.utc)

    def is_token_expired(self, token: str) -> bool:
        """True for expired tokens and for tokens that cannot be read at all."""
        expiration = self.get_expiration(token)
        return expiration is None or expiration <= utc_now()

    def get_remaining_ms(self, token: str) -> int:
        """Milliseconds until expiry; 0 when expired or unreadable."""
        expiration = self.get_expiration(token)
        if expiration is None:
            return 0
        remaining = (expiration - utc_now()).total_seconds() * 1000
        return max(0, int(remaining))
