"""Service layer for accounts and session tokens."""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from realm_pkm.exceptions import AuthenticationError, ErrorCode, ValidationError
from realm_pkm.models.schema import EMAIL_PATTERN, MAX_DISPLAY_NAME_LENGTH, User, utc_now
from realm_pkm.observability import traced
from realm_pkm.security.passwords import hash_password, verify_password
from realm_pkm.security.tokens import JwtTokenProvider
from realm_pkm.storage.user_repository import UserRepository

logger = logging.getLogger(__name__)

# At least 8 characters drawn from letters, digits and @$!%*?&, with one of each class
STRONG_PASSWORD_PATTERN = re.compile(
    r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$"
)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
WEAK_PASSWORD_MESSAGE = (
    "Password must be at least 8 characters and contain upper-case, lower-case, "
    "a digit and one of @$!%*?&"
)


def is_strong_password(password: Optional[str]) -> bool:
    return bool(password) and STRONG_PASSWORD_PATTERN.match(password) is not None


@dataclass
class AuthResult:
    """Outcome of a register, login or refresh flow."""

    success: bool
    message: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    user: Optional[User] = None
    expires_in_ms: int = 0
    code: Optional[ErrorCode] = None

    @classmethod
    def failure(
        cls, message: str, code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ) -> "AuthResult":
        return cls(success=False, message=message, code=code)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.code is not None:
            data["code"] = self.code.name
        if self.success:
            data.update(
                {
                    "access_token": self.access_token,
                    "refresh_token": self.refresh_token,
                    "token_type": "Bearer",
                    "expires_in_ms": self.expires_in_ms,
                    "user": self.user.to_public_dict() if self.user else None,
                }
            )
        return data


class AuthService:
    """Registration, login and token lifecycle."""

    def __init__(
        self,
        user_repository: UserRepository,
        token_provider: Optional[JwtTokenProvider] = None,
    ):
        self.users = user_repository
        self.tokens = token_provider or JwtTokenProvider()

    def _issue(self, user: User, message: str,
               refresh_token: Optional[str] = None) -> AuthResult:
        return AuthResult(
            success=True,
            message=message,
            access_token=self.tokens.generate_token(user.email),
            refresh_token=refresh_token or self.tokens.generate_refresh_token(user.email),
            user=user,
            expires_in_ms=self.tokens.expiration_ms,
        )

    @traced("register")
    def register(
        self,
        email: str,
        password: str,
        display_name: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> AuthResult:
        """Create an account and sign it in.

        Invalid input and duplicate emails come back as failed results
        rather than exceptions.
        """
        normalized = (email or "").strip().lower()
        if not EMAIL_PATTERN.match(normalized):
            return AuthResult.failure("Invalid email address", ErrorCode.VALIDATION_FAILED)
        if not is_strong_password(password):
            return AuthResult.failure(WEAK_PASSWORD_MESSAGE, ErrorCode.AUTH_WEAK_PASSWORD)
        name = (display_name or "").strip()
        if not name or len(name) > MAX_DISPLAY_NAME_LENGTH:
            return AuthResult.failure(
                f"Display name must be 1-{MAX_DISPLAY_NAME_LENGTH} characters"
            )
        if self.users.exists_by_email(normalized):
            return AuthResult.failure(
                "Email is already registered", ErrorCode.AUTH_EMAIL_TAKEN
            )

        try:
            user = User(
                email=normalized,
                password_hash=hash_password(password),
                display_name=name,
                first_name=first_name,
                last_name=last_name,
            )
        except PydanticValidationError as e:
            return AuthResult.failure(e.errors()[0]["msg"])

        try:
            user = self.users.create(user)
        except ValueError:
            # Lost a race with a concurrent registration
            return AuthResult.failure(
                "Email is already registered", ErrorCode.AUTH_EMAIL_TAKEN
            )

        logger.info(f"Registered user {user.id}")
        return self._issue(user, "Registration successful")

    @traced("authenticate")
    def authenticate(self, email: str, password: str) -> AuthResult:
        """Sign in with email and password.

        Unknown emails, inactive accounts and wrong passwords all fail with
        the same message.
        """
        user = self.users.get_by_email(email or "")
        if user is None or not user.is_active:
            return AuthResult.failure(
                INVALID_CREDENTIALS_MESSAGE, ErrorCode.AUTH_INVALID_CREDENTIALS
            )
        if not verify_password(password or "", user.password_hash):
            logger.info(f"Failed login for user {user.id}")
            return AuthResult.failure(
                INVALID_CREDENTIALS_MESSAGE, ErrorCode.AUTH_INVALID_CREDENTIALS
            )

        user.last_login_at = utc_now()
        user = self.users.update(user)
        return self._issue(user, "Login successful")

    @traced("refresh_token")
    def refresh(self, refresh_token: str) -> AuthResult:
        """Issue a new access token; the refresh token itself is returned unchanged."""
        if not refresh_token or not self.tokens.is_refresh_token(refresh_token):
            return AuthResult.failure("Invalid refresh token", ErrorCode.AUTH_TOKEN_INVALID)
        user = self.users.get_by_email(self.tokens.get_username(refresh_token) or "")
        if user is None or not user.is_active:
            return AuthResult.failure("Invalid refresh token", ErrorCode.AUTH_TOKEN_INVALID)
        return self._issue(user, "Token refreshed", refresh_token=refresh_token)

    def validate(self, access_token: str) -> User:
        """Resolve an access token to its active user.

        Raises:
            AuthenticationError: For missing, invalid, expired or refresh
                tokens, and for unknown or inactive users.
        """
        if not access_token:
            raise AuthenticationError("Missing token")
        claims = self.tokens.get_claims(access_token)
        if claims is None:
            code = (
                ErrorCode.AUTH_TOKEN_EXPIRED
                if self.tokens.get_expiration(access_token) is not None
                else ErrorCode.AUTH_TOKEN_INVALID
            )
            raise AuthenticationError("Invalid or expired token", code=code)
        if claims.get("type") == "refresh":
            raise AuthenticationError("Refresh tokens cannot be used for access")

        user = self.users.get_by_email(claims.get("sub", ""))
        if user is None:
            raise AuthenticationError(
                "Invalid or expired token", code=ErrorCode.AUTH_USER_NOT_FOUND
            )
        if not user.is_active:
            raise AuthenticationError(
                "Account is deactivated", code=ErrorCode.AUTH_USER_INACTIVE
            )
        return user

    def _require_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if user is None:
            raise AuthenticationError(
                "User not found", code=ErrorCode.AUTH_USER_NOT_FOUND
            )
        return user

    def verify_user(self, user_id: str) -> User:
        """Mark the account's email as verified."""
        user = self._require_user(user_id)
        user.is_verified = True
        return self.users.update(user)

    @traced("change_password")
    def change_password(self, user_id: str, current_password: str,
                        new_password: str) -> None:
        """Replace the password after checking the current one.

        Raises:
            AuthenticationError: If the current password is wrong.
            ValidationError: If the new password is weak.
        """
        user = self._require_user(user_id)
        if not verify_password(current_password or "", user.password_hash):
            raise AuthenticationError(
                "Current password is incorrect",
                code=ErrorCode.AUTH_INVALID_CREDENTIALS,
            )
        if not is_strong_password(new_password):
            raise ValidationError(
                WEAK_PASSWORD_MESSAGE,
                field="new_password",
                code=ErrorCode.AUTH_WEAK_PASSWORD,
            )
        user.password_hash = hash_password(new_password)
        self.users.update(user)
        logger.info(f"Password changed for user {user.id}")

    def update_profile(
        self,
        user_id: str,
        display_name: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        bio: Optional[str] = None,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> User:
        """Update profile fields that are not None.

        Raises:
            ValidationError: If a field is out of range.
        """
        user = self._require_user(user_id)
        updates = {
            "display_name": display_name,
            "first_name": first_name,
            "last_name": last_name,
            "bio": bio,
            "preferences": preferences,
        }
        for field, value in updates.items():
            if value is None:
                continue
            try:
                setattr(user, field, value)
            except PydanticValidationError as e:
                raise ValidationError(
                    e.errors()[0]["msg"], field=field, value=value
                ) from e
        return self.users.update(user)

    def deactivate_user(self, user_id: str) -> User:
        """Disable the account; its tokens stop validating."""
        user = self._require_user(user_id)
        user.is_active = False
        logger.info(f"Deactivated user {user.id}")
        return self.users.update(user)
